"""Database package for Mongo Auto-Rollback."""

from mongo_auto_rollback.database.manager import DatabaseManager, MigrationDatabase, db_manager

__all__ = ["DatabaseManager", "MigrationDatabase", "db_manager"]

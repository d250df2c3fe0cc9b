"""
Migration runner for Mongo Auto-Rollback.

Runs migrations against undo-logged collections and rolls them back by
replaying the undo log.
"""

from .migration_manager import BaseMigration, MigrationError, MigrationManager

__all__ = [
    "BaseMigration",
    "MigrationError",
    "MigrationManager",
]

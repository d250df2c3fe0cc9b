"""Mongo Auto-Rollback: undo logging and rollback replay for MongoDB migrations."""

__version__ = "0.1.0"

"""
Database migration manager with auto-rollback.

Runs migrations against undo-logged collections and records their status in
the changelog collection. A migration that does not override `down` is rolled
back by replaying its undo log.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING

from mongo_auto_rollback.auto_rollback import AutoRollbackError, MigrationSession
from mongo_auto_rollback.database import DatabaseManager, MigrationDatabase, db_manager
from mongo_auto_rollback.managers.logging_manager import get_logger

logger = get_logger(prefix="[MigrationManager]")


class MigrationError(AutoRollbackError):
    """A migration could not be applied or rolled back."""

    def __init__(self, message: str, migration: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if migration:
            details["migration"] = migration
        kwargs.setdefault("error_code", "MIGRATION_FAILED")
        super().__init__(message, details=details, **kwargs)


class BaseMigration(ABC):
    """Base class for database migrations."""

    #: Record inverse operations of every write made in `up`
    auto_rollback: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Migration name for identification."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Migration version."""
        pass

    @property
    def description(self) -> str:
        return self.__doc__.strip() if self.__doc__ else ""

    @property
    def migration_id(self) -> str:
        """Identifier scoping the undo log of this migration."""
        return f"{self.name}@{self.version}"

    @abstractmethod
    async def up(self, db: MigrationDatabase) -> Dict[str, Any]:
        """Execute the migration."""
        pass

    async def down(self, db: MigrationDatabase) -> Dict[str, Any]:
        """Rollback the migration by replaying its undo log."""
        outcome = await db.auto_rollback()
        return outcome.model_dump()


class MigrationManager:
    """
    Applies and rolls back migrations.

    The changelog and lock collections are managed outside the undo log; the
    distributed lock itself is left to the caller.
    """

    def __init__(self, manager: Optional[DatabaseManager] = None):
        self.manager = manager or db_manager
        self.logger = logger

    def _changelog(self):
        return self.manager.get_collection(self.manager.config.changelog_collection_name)

    async def run_migration(self, migration: BaseMigration) -> Dict[str, Any]:
        """
        Execute a migration with undo logging.

        Args:
            migration: Migration instance to execute

        Returns:
            Dict containing migration results

        Raises:
            MigrationError: If the migration fails; writes it already made
                stay undo-logged so it can be rolled back
        """
        changelog = self._changelog()
        if await changelog.find_one({"migration_id": migration.migration_id, "status": "completed"}):
            self.logger.warning("Migration %s already applied", migration.migration_id)
            return {"status": "skipped", "migration_id": migration.migration_id}

        session = MigrationSession(
            migration_id=migration.migration_id,
            is_rollback=False,
            auto_rollback_enabled=migration.auto_rollback,
        )
        start_time = datetime.now(timezone.utc)
        self.logger.info("Starting migration: %s", migration.migration_id)

        try:
            result = await migration.up(MigrationDatabase(self.manager, session)) or {}
        except Exception as e:
            await changelog.update_one(
                {"migration_id": migration.migration_id},
                {"$set": {"status": "failed", "error_message": str(e), "completed_at": datetime.now(timezone.utc)}},
                upsert=True,
            )
            self.logger.error("Migration %s failed: %s", migration.migration_id, e, exc_info=True)
            raise MigrationError(
                f"Migration {migration.migration_id} failed: {e}", migration=migration.migration_id, original_error=e
            ) from e

        completed_at = datetime.now(timezone.utc)
        await changelog.update_one(
            {"migration_id": migration.migration_id},
            {
                "$set": {
                    "name": migration.name,
                    "version": migration.version,
                    "description": migration.description,
                    "status": "completed",
                    "started_at": start_time,
                    "completed_at": completed_at,
                    "undo_records": session.sequence_counter,
                },
                "$unset": {"error_message": ""},
            },
            upsert=True,
        )

        duration = (completed_at - start_time).total_seconds()
        self.logger.info("Migration %s completed successfully in %.2f seconds", migration.migration_id, duration)
        return {
            "status": "completed",
            "migration_id": migration.migration_id,
            "duration_seconds": duration,
            "undo_records": session.sequence_counter,
            "result": result,
        }

    async def rollback_migration(self, migration: BaseMigration) -> Dict[str, Any]:
        """
        Roll back an applied or failed migration.

        Args:
            migration: Migration instance to roll back

        Returns:
            Dict containing rollback results
        """
        changelog = self._changelog()
        record = await changelog.find_one({"migration_id": migration.migration_id})
        if not record:
            raise MigrationError(f"Migration {migration.migration_id} not found", migration=migration.migration_id)
        if record.get("status") not in ("completed", "failed"):
            raise MigrationError(
                f"Cannot rollback migration with status: {record.get('status')}", migration=migration.migration_id
            )

        session = MigrationSession(
            migration_id=migration.migration_id,
            is_rollback=True,
            auto_rollback_enabled=migration.auto_rollback,
        )
        self.logger.info("Starting rollback for migration: %s", migration.migration_id)
        result = await migration.down(MigrationDatabase(self.manager, session)) or {}

        await changelog.update_one(
            {"migration_id": migration.migration_id},
            {"$set": {"status": "rolled_back", "rolled_back_at": datetime.now(timezone.utc)}},
        )
        self.logger.info("Migration %s rolled back", migration.migration_id)
        return {"status": "rolled_back", "migration_id": migration.migration_id, "result": result}

    async def get_migration_history(self) -> List[Dict[str, Any]]:
        """Get the history of all migrations, newest first."""
        cursor = self._changelog().find({}, {"_id": 0}).sort("started_at", DESCENDING)
        return await cursor.to_list(length=None)

"""
Rollback executor.

Replays the undo log of a migration: per target collection, newest record
first, as one ordered bulk write that stops on the first error. The log is
purged only after every collection replayed successfully, so a failed
rollback can be retried from an intact log.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo.errors import BulkWriteError, PyMongoError

from mongo_auto_rollback.auto_rollback.exceptions import RollbackExecutionError, RollbackPreconditionError
from mongo_auto_rollback.auto_rollback.models import AutoRollbackConfig, MigrationSession, RollbackOutcome
from mongo_auto_rollback.auto_rollback.undo_log import UndoLog
from mongo_auto_rollback.managers.logging_manager import get_logger

logger = get_logger(prefix="[RollbackExecutor]")


def _operations_applied(error: BulkWriteError) -> int:
    """Index of the first failed request of an ordered bulk write."""
    write_errors = error.details.get("writeErrors") or []
    if write_errors:
        return write_errors[0].get("index", 0)
    return 0


class RollbackExecutor:
    """Replays the undo log of one migration against its target collections."""

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        config: AutoRollbackConfig,
        undo_log: Optional[UndoLog] = None,
    ):
        self._database = database
        self._config = config
        self._undo_log = undo_log

    def _check_preconditions(self, session: MigrationSession) -> None:
        if not session.is_rollback:
            raise RollbackPreconditionError(
                "Auto-rollback is not enabled for this migration: session is not in rollback mode",
                migration_id=session.migration_id,
            )
        if not self._config.auto_rollback_collection_name:
            raise RollbackPreconditionError(
                "Auto-rollback is not enabled for this migration: no auto-rollback collection is configured",
                migration_id=session.migration_id,
            )

    def _get_undo_log(self) -> UndoLog:
        if self._undo_log is None:
            self._undo_log = UndoLog(
                self._database.get_collection(self._config.auto_rollback_collection_name),
                use_transactions=self._config.use_transactions,
            )
        return self._undo_log

    async def _replay(self, migration_id: str, collection_name: str, requests: List[Any]) -> int:
        if not requests:
            return 0
        collection = self._database.get_collection(collection_name)
        try:
            if self._config.use_transactions:
                async with await self._database.client.start_session() as db_session:
                    async with db_session.start_transaction():
                        await collection.bulk_write(requests, ordered=True, session=db_session)
            else:
                await collection.bulk_write(requests, ordered=True)
        except BulkWriteError as e:
            applied = 0 if self._config.use_transactions else _operations_applied(e)
            raise RollbackExecutionError(
                migration_id, collection_name, e, operations_applied=applied, operations_total=len(requests)
            ) from e
        except PyMongoError as e:
            raise RollbackExecutionError(migration_id, collection_name, e, operations_total=len(requests)) from e
        return len(requests)

    async def rollback(self, session: MigrationSession) -> RollbackOutcome:
        """
        Roll back every recorded write of the session's migration.

        Args:
            session: Migration session, which must be in rollback mode

        Returns:
            RollbackOutcome with the operations replayed per collection

        Raises:
            RollbackPreconditionError: If the session is not in rollback mode
                or no undo-log collection is configured; nothing is written
            RollbackExecutionError: If reading or replaying a collection's
                records failed; the undo log is left intact
        """
        self._check_preconditions(session)
        migration_id = session.migration_id
        undo_log = self._get_undo_log()
        start_time = datetime.now(timezone.utc)

        logger.info("Starting auto-rollback for migration: %s", migration_id)
        try:
            target_collections = sorted(await undo_log.distinct_target_collections(migration_id))
        except PyMongoError as e:
            logger.error("Failed to list undo log collections for %s: %s", migration_id, e, exc_info=True)
            raise RollbackExecutionError(migration_id, undo_log.name, e) from e

        replayed: Dict[str, int] = {}
        for collection_name in target_collections:
            try:
                records = await undo_log.read_collection(migration_id, collection_name)
            except (ValidationError, PyMongoError) as e:
                logger.error(
                    "Failed to read undo records of %s for %s: %s", collection_name, migration_id, e, exc_info=True
                )
                raise RollbackExecutionError(migration_id, collection_name, e) from e

            requests = [record.payload.to_request() for record in records]
            logger.debug("Replaying %d undo operations on %s", len(requests), collection_name)
            try:
                replayed[collection_name] = await self._replay(migration_id, collection_name, requests)
            except RollbackExecutionError as e:
                logger.error("%s", e.message, exc_info=True)
                raise

        try:
            purged = await undo_log.purge(migration_id)
        except PyMongoError as e:
            logger.error(
                "Rollback of %s was applied but its undo log could not be purged: %s", migration_id, e, exc_info=True
            )
            raise RollbackExecutionError(
                migration_id, undo_log.name, e, details={"replayed": replayed, "purge_failed": True}
            ) from e

        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        total = sum(replayed.values())
        logger.info(
            "Auto-rollback of %s completed in %.2f seconds (%d operations on %d collections)",
            migration_id,
            duration,
            total,
            len(replayed),
        )
        return RollbackOutcome(
            migration_id=migration_id,
            collections=replayed,
            operations_replayed=total,
            records_purged=purged,
            duration_seconds=duration,
        )


async def rollback(
    database: AsyncIOMotorDatabase, session: MigrationSession, config: AutoRollbackConfig
) -> RollbackOutcome:
    """Roll back the session's migration using the undo log configured in `config`."""
    return await RollbackExecutor(database, config).rollback(session)

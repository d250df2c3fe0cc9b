"""
Undo log backed by a MongoDB collection.

Append-only, migration-scoped store of inverse operation records. Records of
one forward call are written all-or-nothing, and are read back per target
collection in last-in-first-out order.
"""

from typing import Dict, List, Set

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from mongo_auto_rollback.auto_rollback.models import InverseOperationRecord
from mongo_auto_rollback.managers.logging_manager import get_logger

logger = get_logger(prefix="[UndoLog]")

# Replay order: newest forward call first, newest record within a call first
REPLAY_SORT = [("timestamp", DESCENDING), ("sequence", DESCENDING)]


class UndoLog:
    """Inverse-operation records of every migration, stored in one collection."""

    def __init__(self, collection: AsyncIOMotorCollection, use_transactions: bool = False):
        """
        Initialize the undo log.

        Args:
            collection: The undo-log collection
            use_transactions: Append inside a multi-document transaction
                (replica set or mongos only)
        """
        self._collection = collection
        self._use_transactions = use_transactions

    @property
    def name(self) -> str:
        return self._collection.name

    async def append(self, migration_id: str, records: List[InverseOperationRecord]) -> int:
        """
        Durably store every record of one forward call, or none of them.

        Args:
            migration_id: Migration the records belong to
            records: Records of one forward call, in sequence order

        Returns:
            Number of records stored

        Raises:
            ValueError: If a record belongs to another migration
            PyMongoError: If the insert failed; nothing is left stored
        """
        if not records:
            return 0

        documents = []
        for record in records:
            if record.migration_id != migration_id:
                raise ValueError(
                    f"Record for migration {record.migration_id} appended to the log of {migration_id}"
                )
            document = record.to_document()
            document["_id"] = ObjectId()
            documents.append(document)

        if self._use_transactions:
            await self._append_in_transaction(documents)
        else:
            await self._append_with_compensation(migration_id, documents)

        logger.debug(
            "Appended %d undo records for %s (sequences %d-%d)",
            len(documents),
            migration_id,
            records[0].sequence,
            records[-1].sequence,
        )
        return len(documents)

    async def _append_in_transaction(self, documents: List[dict]) -> None:
        client = self._collection.database.client
        async with await client.start_session() as session:
            async with session.start_transaction():
                await self._collection.insert_many(documents, ordered=True, session=session)

    async def _append_with_compensation(self, migration_id: str, documents: List[dict]) -> None:
        try:
            await self._collection.insert_many(documents, ordered=True)
        except PyMongoError as e:
            inserted_ids = [document["_id"] for document in documents]
            logger.warning(
                "Undo log append for %s failed, removing partially written records: %s", migration_id, e
            )
            try:
                await self._collection.delete_many({"_id": {"$in": inserted_ids}})
            except PyMongoError as cleanup_error:
                logger.error(
                    "Failed to remove partially written undo records for %s: %s",
                    migration_id,
                    cleanup_error,
                    exc_info=True,
                )
            raise

    async def distinct_target_collections(self, migration_id: str) -> Set[str]:
        names = await self._collection.distinct("target_collection", {"migration_id": migration_id})
        return set(names)

    async def read_collection(self, migration_id: str, target_collection: str) -> List[InverseOperationRecord]:
        """
        Read the records of one target collection in replay order.

        Returns:
            Records sorted by (timestamp desc, sequence desc)

        Raises:
            pydantic.ValidationError: If a stored record is malformed
        """
        cursor = self._collection.find({"migration_id": migration_id, "target_collection": target_collection})
        cursor = cursor.sort(REPLAY_SORT)
        documents = await cursor.to_list(length=None)
        return [InverseOperationRecord.from_document(document) for document in documents]

    async def read_all(self, migration_id: str) -> Dict[str, List[InverseOperationRecord]]:
        """Read every record of a migration, grouped by target collection, each group in replay order."""
        grouped: Dict[str, List[InverseOperationRecord]] = {}
        for target_collection in sorted(await self.distinct_target_collections(migration_id)):
            grouped[target_collection] = await self.read_collection(migration_id, target_collection)
        return grouped

    async def count(self, migration_id: str) -> int:
        return await self._collection.count_documents({"migration_id": migration_id})

    async def purge(self, migration_id: str) -> int:
        """Delete every record of a migration."""
        result = await self._collection.delete_many({"migration_id": migration_id})
        logger.info("Purged %d undo records for %s", result.deleted_count, migration_id)
        return result.deleted_count

"""
Auto-rollback collection wrapper.

This module provides a wrapper around AsyncIOMotorCollection that records the
inverse of every mutating write in the undo log, so a migration can be rolled
back without a hand-written `down`.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

import bson
from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorCursor
from pymongo.errors import BulkWriteError, PyMongoError
from pymongo.results import InsertManyResult

from mongo_auto_rollback.auto_rollback.exceptions import ConfigurationError, OperationError
from mongo_auto_rollback.auto_rollback.models import (
    AutoRollbackConfig,
    InverseOperationRecord,
    MigrationSession,
    OperationKind,
)
from mongo_auto_rollback.auto_rollback.resolver import resolve_inverse
from mongo_auto_rollback.auto_rollback.undo_log import UndoLog
from mongo_auto_rollback.managers.logging_manager import get_logger

logger = get_logger(prefix="[AutoRollback]")

# Keyword arguments of a forward write that also shape its pre-state read
PRE_STATE_READ_KWARGS = ("session", "sort", "collation", "hint")


def _id_key(value: Any) -> bytes:
    # _id values may be unhashable documents
    return bson.encode({"_id": value})


def _inserted_before_failure(documents: Sequence[Mapping[str, Any]], error: PyMongoError, ordered: bool) -> List[Any]:
    """Identifiers of the documents a failed insert_many did write."""
    if not isinstance(error, BulkWriteError):
        return []
    if ordered:
        written = documents[: error.details.get("nInserted", 0)]
    else:
        failed = {write_error.get("index") for write_error in error.details.get("writeErrors", [])}
        written = [document for index, document in enumerate(documents) if index not in failed]
    return [document["_id"] for document in written if "_id" in document]


class AutoRollbackCollection:
    """
    Wrapper that records inverse operations for every mutating write.

    Reads and return values are identical to the wrapped collection. Writes
    pass straight through while the session is in rollback mode or has
    auto-rollback disabled.
    """

    def __init__(
        self,
        collection: AsyncIOMotorCollection,
        session: MigrationSession,
        undo_log: UndoLog,
        config: AutoRollbackConfig,
    ):
        """
        Initialize the auto-rollback collection wrapper.

        Args:
            collection: The underlying MongoDB collection
            session: The migration session the writes belong to
            undo_log: Undo log receiving the inverse records
            config: Auto-rollback configuration
        """
        self._collection = collection
        self._session = session
        self._undo_log = undo_log
        self._config = config
        logger.debug("Created auto-rollback collection %s for %s", collection.name, session.migration_id)

    def _intercepts(self) -> bool:
        return self._session.intercepts_writes and not self._config.is_excluded(self.name)

    async def _capture_pre_state(
        self, kind: OperationKind, filter: Optional[Mapping[str, Any]], kwargs: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        read_kwargs = {key: kwargs[key] for key in PRE_STATE_READ_KWARGS if key in kwargs}
        if kind.is_multi:
            read_kwargs.pop("sort", None)
            return await self._collection.find(filter, **read_kwargs).to_list(length=None)
        document = await self._collection.find_one(filter, **read_kwargs)
        return [document] if document is not None else []

    async def _record(self, kind: OperationKind, primitives: List[Any]) -> None:
        if not primitives:
            logger.debug("%s on %s matched nothing, no undo records", kind.value, self.name)
            return

        timestamp = datetime.now(timezone.utc)
        records = [
            InverseOperationRecord(
                migration_id=self._session.migration_id,
                target_collection=self.name,
                sequence=self._session.next_sequence(),
                timestamp=timestamp,
                payload=primitive,
            )
            for primitive in primitives
        ]
        await self._undo_log.append(self._session.migration_id, records)

    async def _upserted_document(
        self, filter: Optional[Mapping[str, Any]], kwargs: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Look up the document a find_one_and_* upsert created when the call returned the pre-image."""
        read_kwargs = {key: kwargs[key] for key in ("session", "collation") if key in kwargs}
        return await self._collection.find_one(filter, {"_id": 1}, **read_kwargs)

    async def _changed_documents(
        self, kind: OperationKind, pre_state: List[Dict[str, Any]], kwargs: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """Pre-state documents that a failed update_many or delete_many did modify or remove."""
        if not pre_state:
            return []
        read_kwargs = {key: kwargs[key] for key in ("session",) if key in kwargs}
        cursor = self._collection.find({"_id": {"$in": [document["_id"] for document in pre_state]}}, **read_kwargs)
        current = {_id_key(document["_id"]): document for document in await cursor.to_list(length=None)}

        if kind is OperationKind.DELETE_MANY:
            return [document for document in pre_state if _id_key(document["_id"]) not in current]
        return [
            document
            for document in pre_state
            if _id_key(document["_id"]) in current and current[_id_key(document["_id"])] != document
        ]

    async def _record_partial(
        self,
        kind: OperationKind,
        pre_state: List[Dict[str, Any]],
        error: PyMongoError,
        kwargs: Dict[str, Any],
        documents: Optional[Sequence[Mapping[str, Any]]],
        ordered: bool,
    ) -> bool:
        """
        Log the inverse of whatever part of a failed multi-document write took effect.

        Returns:
            bool: True if any part of the write was applied
        """
        if kind is OperationKind.INSERT_MANY:
            inserted_ids = _inserted_before_failure(documents or [], error, ordered)
            primitives = resolve_inverse(kind, None, InsertManyResult(inserted_ids, True))
        else:
            primitives = resolve_inverse(kind, await self._changed_documents(kind, pre_state, kwargs), None)

        if primitives:
            logger.warning(
                "%s on %s failed partway, logging %d undo records for the applied part",
                kind.value,
                self.name,
                len(primitives),
            )
            await self._record(kind, primitives)
        return bool(primitives)

    async def _intercept(
        self,
        kind: OperationKind,
        filter: Optional[Mapping[str, Any]],
        kwargs: Dict[str, Any],
        write: Callable[[], Awaitable[Any]],
        documents: Optional[Sequence[Mapping[str, Any]]] = None,
        ordered: bool = True,
    ) -> Any:
        if not self._intercepts():
            return await write()

        write_applied = False
        try:
            pre_state = await self._capture_pre_state(kind, filter, kwargs) if kind.requires_pre_state else []
            try:
                result = await write()
            except PyMongoError as write_error:
                if kind.is_multi:
                    try:
                        write_applied = await self._record_partial(
                            kind, pre_state, write_error, kwargs, documents, ordered
                        )
                    except Exception as partial_error:
                        # State after the failure is unknown; assume part of the write landed
                        write_applied = True
                        logger.error(
                            "Could not log the applied part of %s on %s: %s",
                            kind.value,
                            self.name,
                            partial_error,
                            exc_info=True,
                        )
                raise
            write_applied = True

            inverse_source = result
            if kind.returns_document and not pre_state and result is None and kwargs.get("upsert"):
                inverse_source = await self._upserted_document(filter, kwargs)
            await self._record(kind, resolve_inverse(kind, pre_state, inverse_source))
        except Exception as e:
            logger.error(
                "%s on %s failed (write applied: %s): %s",
                kind.value,
                self.name,
                write_applied,
                e,
                exc_info=True,
            )
            raise OperationError(kind.value, e, write_applied=write_applied, collection=self.name) from e
        return result

    # Mutating methods

    async def insert_one(self, document: Dict[str, Any], *args, **kwargs):
        return await self._intercept(
            OperationKind.INSERT_ONE,
            None,
            kwargs,
            lambda: self._collection.insert_one(document, *args, **kwargs),
        )

    async def insert_many(self, documents: List[Dict[str, Any]], *args, **kwargs):
        # The driver assigns missing _ids in place, so keep the same document objects
        documents = list(documents)
        ordered = kwargs.get("ordered", args[0] if args else True)
        return await self._intercept(
            OperationKind.INSERT_MANY,
            None,
            kwargs,
            lambda: self._collection.insert_many(documents, *args, **kwargs),
            documents=documents,
            ordered=ordered,
        )

    async def update_one(self, filter: Dict[str, Any], update: Union[Dict[str, Any], List], *args, **kwargs):
        return await self._intercept(
            OperationKind.UPDATE_ONE,
            filter,
            kwargs,
            lambda: self._collection.update_one(filter, update, *args, **kwargs),
        )

    async def update_many(self, filter: Dict[str, Any], update: Union[Dict[str, Any], List], *args, **kwargs):
        return await self._intercept(
            OperationKind.UPDATE_MANY,
            filter,
            kwargs,
            lambda: self._collection.update_many(filter, update, *args, **kwargs),
        )

    async def replace_one(self, filter: Dict[str, Any], replacement: Dict[str, Any], *args, **kwargs):
        return await self._intercept(
            OperationKind.REPLACE_ONE,
            filter,
            kwargs,
            lambda: self._collection.replace_one(filter, replacement, *args, **kwargs),
        )

    async def delete_one(self, filter: Dict[str, Any], *args, **kwargs):
        return await self._intercept(
            OperationKind.DELETE_ONE,
            filter,
            kwargs,
            lambda: self._collection.delete_one(filter, *args, **kwargs),
        )

    async def delete_many(self, filter: Dict[str, Any], *args, **kwargs):
        return await self._intercept(
            OperationKind.DELETE_MANY,
            filter,
            kwargs,
            lambda: self._collection.delete_many(filter, *args, **kwargs),
        )

    async def find_one_and_update(self, filter: Dict[str, Any], update: Union[Dict[str, Any], List], *args, **kwargs):
        return await self._intercept(
            OperationKind.FIND_ONE_AND_UPDATE,
            filter,
            kwargs,
            lambda: self._collection.find_one_and_update(filter, update, *args, **kwargs),
        )

    async def find_one_and_replace(self, filter: Dict[str, Any], replacement: Dict[str, Any], *args, **kwargs):
        return await self._intercept(
            OperationKind.FIND_ONE_AND_REPLACE,
            filter,
            kwargs,
            lambda: self._collection.find_one_and_replace(filter, replacement, *args, **kwargs),
        )

    async def find_one_and_delete(self, filter: Dict[str, Any], *args, **kwargs):
        return await self._intercept(
            OperationKind.FIND_ONE_AND_DELETE,
            filter,
            kwargs,
            lambda: self._collection.find_one_and_delete(filter, *args, **kwargs),
        )

    def _warn_untracked(self, method: str) -> None:
        if self._intercepts():
            logger.warning(
                "%s on %s in %s is not tracked by auto-rollback", method, self.name, self._session.migration_id
            )

    async def bulk_write(self, requests: List[Any], *args, **kwargs):
        """Run a bulk write. Its requests are not undo-logged."""
        self._warn_untracked("bulk_write")
        return await self._collection.bulk_write(requests, *args, **kwargs)

    async def drop(self, *args, **kwargs):
        """Drop the collection. Rollback cannot bring its documents back."""
        self._warn_untracked("drop")
        return await self._collection.drop(*args, **kwargs)

    def with_options(self, *args, **kwargs) -> "AutoRollbackCollection":
        """Same collection with other read/write options, still undo-logged."""
        return AutoRollbackCollection(
            self._collection.with_options(*args, **kwargs), self._session, self._undo_log, self._config
        )

    # Reads

    async def find_one(self, filter: Optional[Dict[str, Any]] = None, *args, **kwargs) -> Optional[Dict[str, Any]]:
        return await self._collection.find_one(filter, *args, **kwargs)

    def find(self, filter: Optional[Dict[str, Any]] = None, *args, **kwargs) -> AsyncIOMotorCursor:
        return self._collection.find(filter, *args, **kwargs)

    async def count_documents(self, filter: Dict[str, Any], *args, **kwargs) -> int:
        return await self._collection.count_documents(filter, *args, **kwargs)

    async def distinct(self, key: str, filter: Optional[Dict[str, Any]] = None, *args, **kwargs) -> List[Any]:
        return await self._collection.distinct(key, filter, *args, **kwargs)

    def aggregate(self, pipeline: List[Dict[str, Any]], *args, **kwargs):
        return self._collection.aggregate(pipeline, *args, **kwargs)

    def __getattr__(self, item: str) -> Any:
        if item.startswith("_"):
            raise AttributeError(item)
        return getattr(self._collection, item)

    @property
    def name(self) -> str:
        """Get the collection name."""
        return self._collection.name

    @property
    def wrapped(self) -> AsyncIOMotorCollection:
        """Get the underlying collection."""
        return self._collection

    @property
    def session(self) -> MigrationSession:
        return self._session


def wrap_collection(
    collection: AsyncIOMotorCollection,
    session: MigrationSession,
    config: AutoRollbackConfig,
    undo_log: Optional[UndoLog] = None,
) -> Union[AsyncIOMotorCollection, AutoRollbackCollection]:
    """
    Wrap a collection so its writes are undo-logged for the given session.

    Args:
        collection: The raw collection
        session: The active migration session
        config: Auto-rollback configuration
        undo_log: Undo log to append to; defaults to the configured undo-log
            collection of the same database

    Returns:
        The raw collection for excluded or unlogged collections, otherwise an
        AutoRollbackCollection

    Raises:
        ConfigurationError: If the session wants auto-rollback but no
            undo-log collection is configured
    """
    if config.is_excluded(collection.name):
        return collection

    if not config.auto_rollback_collection_name:
        if session.intercepts_writes:
            raise ConfigurationError(
                "Auto-rollback is enabled for this migration but no auto-rollback collection is configured",
                details={"migration_id": session.migration_id, "collection": collection.name},
            )
        return collection

    if undo_log is None:
        undo_log = UndoLog(
            collection.database.get_collection(config.auto_rollback_collection_name),
            use_transactions=config.use_transactions,
        )
    return AutoRollbackCollection(collection, session, undo_log, config)

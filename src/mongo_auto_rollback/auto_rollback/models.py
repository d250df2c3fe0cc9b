"""
Data model for auto-rollback.

Contains the forward operation kinds, the inverse primitives recorded for
them, the persisted undo record, the per-migration session and the
configuration naming the collections that are never intercepted.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, Literal, Optional, Union

from pydantic import BaseModel, Field
from pymongo import DeleteMany, InsertOne, ReplaceOne

from mongo_auto_rollback.config import Settings, settings


class OperationKind(str, Enum):
    """Mutating collection methods that are intercepted, by driver method name."""

    INSERT_ONE = "insert_one"
    INSERT_MANY = "insert_many"
    UPDATE_ONE = "update_one"
    UPDATE_MANY = "update_many"
    REPLACE_ONE = "replace_one"
    DELETE_ONE = "delete_one"
    DELETE_MANY = "delete_many"
    FIND_ONE_AND_UPDATE = "find_one_and_update"
    FIND_ONE_AND_REPLACE = "find_one_and_replace"
    FIND_ONE_AND_DELETE = "find_one_and_delete"

    @property
    def requires_pre_state(self) -> bool:
        """Update, replace and delete calls destroy the documents their inverse needs."""
        return self not in (OperationKind.INSERT_ONE, OperationKind.INSERT_MANY)

    @property
    def is_multi(self) -> bool:
        return self in (OperationKind.INSERT_MANY, OperationKind.UPDATE_MANY, OperationKind.DELETE_MANY)

    @property
    def returns_document(self) -> bool:
        """The driver returns a document instead of a write result."""
        return self in (
            OperationKind.FIND_ONE_AND_UPDATE,
            OperationKind.FIND_ONE_AND_REPLACE,
            OperationKind.FIND_ONE_AND_DELETE,
        )


# Inverse primitives
class InsertPrimitive(BaseModel):
    """Re-insert a document removed by the forward call."""

    kind: Literal["insert"] = "insert"
    document: Dict[str, Any]

    def to_request(self) -> InsertOne:
        return InsertOne(dict(self.document))


class DeleteByFilterPrimitive(BaseModel):
    """Delete the documents a forward call created."""

    kind: Literal["delete"] = "delete"
    filter: Dict[str, Any]

    def to_request(self) -> DeleteMany:
        return DeleteMany(dict(self.filter))


class ReplaceByFilterPrimitive(BaseModel):
    """Restore the full pre-write content of one document."""

    kind: Literal["replace"] = "replace"
    filter: Dict[str, Any]
    replacement: Dict[str, Any]

    def to_request(self) -> ReplaceOne:
        return ReplaceOne(dict(self.filter), dict(self.replacement))


InversePrimitive = Annotated[
    Union[InsertPrimitive, DeleteByFilterPrimitive, ReplaceByFilterPrimitive],
    Field(discriminator="kind"),
]


class InverseOperationRecord(BaseModel):
    """One persisted undo write, scoped to a migration and a target collection."""

    migration_id: str = Field(..., min_length=1)
    target_collection: str = Field(..., min_length=1)
    sequence: int = Field(..., ge=0)
    timestamp: datetime
    payload: InversePrimitive

    def to_document(self) -> Dict[str, Any]:
        """Render the record in its undo-log collection layout."""
        return self.model_dump()

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "InverseOperationRecord":
        """Parse an undo-log document, ignoring the store's own `_id`."""
        data = {key: value for key, value in document.items() if key != "_id"}
        return cls.model_validate(data)


@dataclass
class MigrationSession:
    """
    State of one migration execution.

    The runner owns the mode flags; the interception layer owns the counter.
    """

    migration_id: str
    is_rollback: bool = False
    auto_rollback_enabled: bool = True
    sequence_counter: int = 0

    def next_sequence(self) -> int:
        sequence = self.sequence_counter
        self.sequence_counter += 1
        return sequence

    @property
    def intercepts_writes(self) -> bool:
        return self.auto_rollback_enabled and not self.is_rollback


class AutoRollbackConfig(BaseModel):
    """Collection names the auto-rollback subsystem depends on."""

    changelog_collection_name: str = "changelog"
    lock_collection_name: str = "changelog_lock"
    auto_rollback_collection_name: Optional[str] = None
    use_transactions: bool = False

    @classmethod
    def from_settings(cls, app_settings: Optional[Settings] = None) -> "AutoRollbackConfig":
        app_settings = app_settings or settings
        return cls(
            changelog_collection_name=app_settings.CHANGELOG_COLLECTION_NAME,
            lock_collection_name=app_settings.LOCK_COLLECTION_NAME,
            auto_rollback_collection_name=app_settings.AUTO_ROLLBACK_COLLECTION_NAME,
            use_transactions=app_settings.AUTO_ROLLBACK_USE_TRANSACTIONS,
        )

    @property
    def excluded_collections(self) -> FrozenSet[str]:
        names = {self.changelog_collection_name, self.lock_collection_name, self.auto_rollback_collection_name}
        return frozenset(name for name in names if name)

    def is_excluded(self, collection_name: str) -> bool:
        return collection_name in self.excluded_collections


class RollbackOutcome(BaseModel):
    """Summary of a completed rollback."""

    migration_id: str
    collections: Dict[str, int] = Field(default_factory=dict, description="Operations replayed per collection")
    operations_replayed: int = 0
    records_purged: int = 0
    duration_seconds: float = 0.0

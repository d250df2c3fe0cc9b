"""
Auto-rollback for migrations.

Records the inverse of every mutating write a migration issues and replays
those inverses, newest first, to restore the prior state.
"""

from .exceptions import (
    AutoRollbackError,
    ConfigurationError,
    InverseResolutionError,
    OperationError,
    RollbackExecutionError,
    RollbackPreconditionError,
)
from .executor import RollbackExecutor, rollback
from .interceptor import AutoRollbackCollection, wrap_collection
from .models import (
    AutoRollbackConfig,
    DeleteByFilterPrimitive,
    InsertPrimitive,
    InverseOperationRecord,
    MigrationSession,
    OperationKind,
    ReplaceByFilterPrimitive,
    RollbackOutcome,
)
from .resolver import resolve_inverse
from .undo_log import UndoLog

__all__ = [
    "AutoRollbackCollection",
    "AutoRollbackConfig",
    "AutoRollbackError",
    "ConfigurationError",
    "DeleteByFilterPrimitive",
    "InsertPrimitive",
    "InverseOperationRecord",
    "InverseResolutionError",
    "MigrationSession",
    "OperationError",
    "OperationKind",
    "ReplaceByFilterPrimitive",
    "RollbackExecutionError",
    "RollbackExecutor",
    "RollbackOutcome",
    "RollbackPreconditionError",
    "UndoLog",
    "resolve_inverse",
    "rollback",
    "wrap_collection",
]

"""
Auto-Rollback Exceptions

Exception hierarchy for undo logging and rollback replay. Every error carries
a human-readable message, an error code for programmatic handling, optional
details, and the original exception that caused it.
"""

from typing import Any, Dict, Optional


class AutoRollbackError(Exception):
    """Base exception for all auto-rollback errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ):
        """
        Initialize auto-rollback error.

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
            details: Optional additional error details
            original_error: Optional original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for reporting."""
        result = {
            "error": self.__class__.__name__,
            "message": self.message,
        }

        if self.error_code:
            result["error_code"] = self.error_code

        if self.details:
            result["details"] = self.details

        if self.original_error:
            result["original_error"] = str(self.original_error)

        return result


class ConfigurationError(AutoRollbackError):
    """Auto-rollback requested without the configuration it needs."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "AUTO_ROLLBACK_NOT_CONFIGURED")
        super().__init__(message, **kwargs)


class InverseResolutionError(AutoRollbackError):
    """An inverse operation could not be derived from a forward call."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        kwargs.setdefault("error_code", "INVERSE_RESOLUTION_FAILED")
        super().__init__(message, details=details, **kwargs)
        self.operation = operation


class OperationError(AutoRollbackError):
    """
    A forward write, its pre-state read, its inverse computation or the undo
    log append failed.

    `write_applied` tells the caller whether the forward write itself took
    effect before the failure.
    """

    def __init__(
        self,
        operation: str,
        original_error: BaseException,
        write_applied: bool = False,
        collection: Optional[str] = None,
        **kwargs,
    ):
        message = f"Failed to execute {operation} with auto-rollback: {original_error}"
        details = kwargs.pop("details", {})
        details.update({"operation": operation, "write_applied": write_applied})
        if collection:
            details["collection"] = collection
        kwargs.setdefault("error_code", "OPERATION_FAILED")
        super().__init__(message, details=details, original_error=original_error, **kwargs)
        self.operation = operation
        self.write_applied = write_applied
        self.collection = collection


class RollbackPreconditionError(AutoRollbackError):
    """Rollback invoked outside rollback mode or without an undo-log collection."""

    def __init__(self, message: str, migration_id: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if migration_id:
            details["migration_id"] = migration_id
        kwargs.setdefault("error_code", "ROLLBACK_PRECONDITION_FAILED")
        super().__init__(message, details=details, **kwargs)
        self.migration_id = migration_id


class RollbackExecutionError(AutoRollbackError):
    """
    Replaying the undo records of one collection failed partway.

    The undo log is left intact so the rollback can be retried.
    """

    def __init__(
        self,
        migration_id: str,
        collection: str,
        original_error: BaseException,
        operations_applied: int = 0,
        operations_total: int = 0,
        **kwargs,
    ):
        message = (
            f"Auto-rollback of {migration_id} failed on collection {collection} "
            f"after {operations_applied}/{operations_total} operations: {original_error}"
        )
        details = kwargs.pop("details", {})
        details.update(
            {
                "migration_id": migration_id,
                "collection": collection,
                "operations_applied": operations_applied,
                "operations_total": operations_total,
            }
        )
        kwargs.setdefault("error_code", "ROLLBACK_EXECUTION_FAILED")
        super().__init__(message, details=details, original_error=original_error, **kwargs)
        self.migration_id = migration_id
        self.collection = collection
        self.operations_applied = operations_applied
        self.operations_total = operations_total

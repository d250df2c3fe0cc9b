"""
Inverse-operation resolver.

Maps a forward write to the ordered list of inverse primitives that undo it.
Every arm is a pure function of (pre-state, result): insert-family inverses are
derived from the identifiers the store assigned, update/replace/delete-family
inverses from the documents snapshotted right before the write.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from mongo_auto_rollback.auto_rollback.exceptions import InverseResolutionError
from mongo_auto_rollback.auto_rollback.models import (
    DeleteByFilterPrimitive,
    InsertPrimitive,
    OperationKind,
    ReplaceByFilterPrimitive,
)

PreState = Sequence[Mapping[str, Any]]
Resolver = Callable[[PreState, Any], List[Any]]


def _document_id(document: Mapping[str, Any], kind: OperationKind) -> Any:
    if "_id" not in document:
        raise InverseResolutionError("Pre-state document has no _id", operation=kind.value)
    return document["_id"]


def _restore_upserted(result: Any) -> List[DeleteByFilterPrimitive]:
    upserted_id = getattr(result, "upserted_id", None)
    if upserted_id is None:
        return []
    return [DeleteByFilterPrimitive(filter={"_id": upserted_id})]


def _invert_insert_one(pre_state: PreState, result: Any) -> List[Any]:
    inserted_id = getattr(result, "inserted_id", None)
    if inserted_id is None:
        raise InverseResolutionError("insert_one result carries no inserted_id", operation="insert_one")
    return [DeleteByFilterPrimitive(filter={"_id": inserted_id})]


def _invert_insert_many(pre_state: PreState, result: Any) -> List[Any]:
    inserted_ids = getattr(result, "inserted_ids", None)
    if inserted_ids is None:
        raise InverseResolutionError("insert_many result carries no inserted_ids", operation="insert_many")
    # Some drivers hand back an index -> id mapping
    if isinstance(inserted_ids, Mapping):
        inserted_ids = list(inserted_ids.values())
    if not inserted_ids:
        return []
    return [DeleteByFilterPrimitive(filter={"_id": {"$in": list(inserted_ids)}})]


def _invert_delete(pre_state: PreState, result: Any) -> List[Any]:
    return [InsertPrimitive(document=dict(document)) for document in pre_state]


def _replace_restoring(kind: OperationKind) -> Resolver:
    def invert(pre_state: PreState, result: Any) -> List[Any]:
        primitives: List[Any] = [
            ReplaceByFilterPrimitive(filter={"_id": _document_id(document, kind)}, replacement=dict(document))
            for document in pre_state
        ]
        return primitives + _restore_upserted(result)

    return invert


def _modify_restoring(kind: OperationKind) -> Resolver:
    # find_one_and_* return a document; with no pre-state it is the upserted one
    def invert(pre_state: PreState, result: Any) -> List[Any]:
        if pre_state:
            return [
                ReplaceByFilterPrimitive(filter={"_id": _document_id(document, kind)}, replacement=dict(document))
                for document in pre_state
            ]
        if isinstance(result, Mapping) and "_id" in result:
            return [DeleteByFilterPrimitive(filter={"_id": result["_id"]})]
        return []

    return invert


INVERSE_RESOLVERS: Dict[OperationKind, Resolver] = {
    OperationKind.INSERT_ONE: _invert_insert_one,
    OperationKind.INSERT_MANY: _invert_insert_many,
    OperationKind.REPLACE_ONE: _replace_restoring(OperationKind.REPLACE_ONE),
    OperationKind.UPDATE_ONE: _replace_restoring(OperationKind.UPDATE_ONE),
    OperationKind.UPDATE_MANY: _replace_restoring(OperationKind.UPDATE_MANY),
    OperationKind.DELETE_ONE: _invert_delete,
    OperationKind.DELETE_MANY: _invert_delete,
    OperationKind.FIND_ONE_AND_UPDATE: _modify_restoring(OperationKind.FIND_ONE_AND_UPDATE),
    OperationKind.FIND_ONE_AND_REPLACE: _modify_restoring(OperationKind.FIND_ONE_AND_REPLACE),
    OperationKind.FIND_ONE_AND_DELETE: _invert_delete,
}


def resolve_inverse(kind: OperationKind, pre_state: Optional[PreState], result: Any) -> List[Any]:
    """
    Compute the inverse primitives for one forward call.

    Args:
        kind: The forward operation kind
        pre_state: Documents matched by the forward filter, read before the
            write (at most one for the single-document kinds). Ignored for
            inserts.
        result: The driver result returned by the forward write

    Returns:
        Ordered list of inverse primitives; empty when the call matched nothing

    Raises:
        InverseResolutionError: If the inverse cannot be derived
    """
    try:
        kind = OperationKind(kind)
    except ValueError as e:
        raise InverseResolutionError(f"Unsupported operation: {kind}", operation=str(kind), original_error=e) from e

    pre_state = list(pre_state or [])
    if not kind.is_multi and len(pre_state) > 1:
        raise InverseResolutionError(
            f"{kind.value} expects at most one pre-state document, got {len(pre_state)}", operation=kind.value
        )
    return INVERSE_RESOLVERS[kind](pre_state, result)

"""Failure taxonomy for identity resolution.

Source and per-candidate failures are isolated by the caller and only
counted; run lookups and run state checks abort the call.
"""

from __future__ import annotations

from typing import Any

from identigraph.kernel.errors import (
    ConflictError,
    IdentigraphError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)


class SourceUnavailable(IdentigraphError):
    """The source's table is not configured or does not exist."""

    def __init__(self, source: str, *, meta: dict[str, Any] | None = None):
        super().__init__(
            code="identity.source_unavailable",
            message=f"Identity source {source!r} is not available",
            status_code=404,
            meta={"source": source, **(meta or {})},
        )
        self.source = source


class SourceQueryError(UpstreamError):
    def __init__(self, source: str, *, reason: str):
        super().__init__(
            code="identity.source_query_failed",
            message=f"Failed to read identity source {source!r}: {reason}",
            meta={"source": source},
        )
        self.source = source


class NodeCreationFailure(UpstreamError):
    def __init__(self, entity_type: str, entity_id: str, *, reason: str):
        super().__init__(
            code="identity.node_creation_failed",
            message=f"Graph node upsert failed for {entity_type}:{entity_id}: {reason}",
            meta={"entity_type": entity_type, "entity_id": entity_id},
        )


class EdgeInsertConflict(ConflictError):
    """An active edge for the node pair was inserted concurrently."""

    def __init__(self, source_node_id: str, target_node_id: str):
        super().__init__(
            code="identity.edge_conflict",
            message="Active same_person edge already exists for node pair",
            meta={"source_node_id": source_node_id, "target_node_id": target_node_id},
        )


class RunNotFound(NotFoundError):
    def __init__(self, run_id: str):
        super().__init__(
            code="identity.run_not_found",
            message="Resolution run not found",
            meta={"run_id": run_id},
        )


class InvalidRunState(ConflictError):
    def __init__(self, run_id: str, status: str, *, expected: list[str]):
        super().__init__(
            code="identity.invalid_run_state",
            message=f"Run is {status}. Expected one of: {', '.join(expected)}",
            meta={"run_id": run_id, "status": status},
        )


class InvalidCandidateSelection(ValidationError):
    """Selected candidate ids that do not belong to the run.

    Raised only by strict callers; the orchestrator logs unknown ids and
    ignores them.
    """

    def __init__(self, run_id: str, unknown_ids: list[str]):
        super().__init__(
            code="identity.invalid_candidate_selection",
            message="Selected candidates do not belong to the run",
            meta={"run_id": run_id, "unknown_ids": unknown_ids},
        )
        self.unknown_ids = unknown_ids

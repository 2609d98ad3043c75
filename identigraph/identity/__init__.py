"""
Cross-Source Identity Resolution Module

Detects person records in different sources that belong to the same human,
records them as reviewable match candidates, and materializes accepted
matches as `same_person` edges in the identity graph.
"""

from .errors import (
    EdgeInsertConflict,
    InvalidCandidateSelection,
    InvalidRunState,
    NodeCreationFailure,
    RunNotFound,
    SourceQueryError,
    SourceUnavailable,
)
from .merge import DisjointSet, load_merged_people, merge_people
from .orchestrator import ResolutionOrchestrator, get_resolution_orchestrator
from .post_sync import run_post_sync_resolution
from .repository import PostgresIdentityStore
from .summary import get_identity_summary
from .types import (
    ApplySummary,
    CandidateStatus,
    IdentityRecord,
    IdentitySummary,
    MatchCandidate,
    PersistedCandidate,
    PersonRow,
    PostSyncSummary,
    ResolutionRun,
    ResolveAllSummary,
    ReverseSummary,
    RunStatus,
    RunSummary,
)

__all__ = [
    "ResolutionOrchestrator",
    "get_resolution_orchestrator",
    "run_post_sync_resolution",
    "get_identity_summary",
    "merge_people",
    "load_merged_people",
    "DisjointSet",
    "PostgresIdentityStore",
    "IdentityRecord",
    "MatchCandidate",
    "PersistedCandidate",
    "ResolutionRun",
    "RunStatus",
    "CandidateStatus",
    "RunSummary",
    "ApplySummary",
    "ReverseSummary",
    "PostSyncSummary",
    "ResolveAllSummary",
    "IdentitySummary",
    "PersonRow",
    "SourceUnavailable",
    "SourceQueryError",
    "NodeCreationFailure",
    "EdgeInsertConflict",
    "RunNotFound",
    "InvalidRunState",
    "InvalidCandidateSelection",
]

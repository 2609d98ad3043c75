"""Store port for identity resolution.

The loader, orchestrator, materializer and presentation merge only talk to
this protocol. `PostgresIdentityStore` is the production adapter; tests use an
in-memory fake.

Error contract:
- `fetch_source_rows` / `count_source_rows` raise `SourceUnavailable` for a
  missing table and `SourceQueryError` for any other read failure.
- `ensure_graph_node` raises `NodeCreationFailure`.
- `insert_edge` raises `EdgeInsertConflict` when an active edge for the same
  unordered node pair and relation type already exists.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from .sources import SourceDefinition
from .types import (
    CandidateStatus,
    GraphEdge,
    GraphNode,
    IdentityLink,
    MatchCandidate,
    PersistedCandidate,
    ResolutionRun,
    RunStatus,
)


class IdentityStore(Protocol):
    # Source records

    async def fetch_source_rows(
        self, org_id: str, source: SourceDefinition, *, phone_only: bool = False
    ) -> list[dict[str, Any]]:
        """Rows with a non-empty email, or with a phone and no email when `phone_only`."""
        ...

    async def count_source_rows(self, org_id: str, source: SourceDefinition) -> int:
        ...

    # Run ledger

    async def create_run(
        self,
        org_id: str,
        *,
        stats: dict[str, Any],
        computed_at: datetime,
        created_by: str | None,
    ) -> ResolutionRun:
        ...

    async def get_run(self, org_id: str, run_id: str) -> ResolutionRun | None:
        ...

    async def list_runs(
        self, org_id: str, *, status: RunStatus | None = None, limit: int = 5
    ) -> list[ResolutionRun]:
        ...

    async def update_run_status(
        self, org_id: str, run_id: str, status: RunStatus, *, at: datetime
    ) -> None:
        """Set `status` and stamp `applied_at` or `reversed_at` as appropriate."""
        ...

    # Candidates

    async def insert_candidates(
        self, org_id: str, run_id: str, candidates: list[MatchCandidate]
    ) -> int:
        ...

    async def list_candidates(
        self,
        org_id: str,
        run_id: str,
        *,
        statuses: list[CandidateStatus] | None = None,
        ids: list[str] | None = None,
        limit: int | None = None,
    ) -> list[PersistedCandidate]:
        """Candidates ordered by tier ascending, then confidence descending."""
        ...

    async def set_candidate_status(
        self, org_id: str, run_id: str, candidate_ids: list[str], status: CandidateStatus
    ) -> int:
        ...

    async def accept_candidate(self, org_id: str, candidate_id: str, edge_id: str) -> None:
        """Mark accepted and record the edge that realized it."""
        ...

    async def count_candidates(
        self, org_id: str, run_id: str, *, exclude_status: CandidateStatus | None = None
    ) -> int:
        ...

    async def reset_accepted_candidates(
        self, org_id: str, run_id: str, *, exclude_ids: list[str] | None = None
    ) -> int:
        """Accepted → pending with the edge reference cleared, except `exclude_ids`."""
        ...

    # Graph

    async def ensure_graph_node(
        self,
        org_id: str,
        entity_type: str,
        entity_id: str,
        *,
        label: str,
        sublabel: str | None = None,
        created_by: str | None = None,
    ) -> str:
        ...

    async def find_active_edge(
        self, org_id: str, node_a: str, node_b: str, relation_type: str
    ) -> str | None:
        """Active edge id between the two nodes in either direction."""
        ...

    async def insert_edge(self, edge: GraphEdge) -> str:
        ...

    async def deactivate_edge(self, org_id: str, edge_id: str, *, at: datetime) -> bool:
        """True when an active edge was closed."""
        ...

    async def find_graph_nodes(
        self, org_id: str, entity_keys: list[tuple[str, str]]
    ) -> list[GraphNode]:
        ...

    async def list_active_edges(
        self, org_id: str, node_ids: list[str], relation_type: str
    ) -> list[tuple[str, str]]:
        """(source_node_id, target_node_id) of active edges with both ends in `node_ids`."""
        ...

    async def count_active_edges(self, org_id: str, relation_type: str) -> int:
        ...

    # Legacy pairwise links

    async def upsert_identity_link(self, link: IdentityLink) -> bool:
        """True when the link was inserted or reactivated; active duplicates are ignored."""
        ...

    async def deactivate_identity_link(
        self, org_id: str, crm_contact_id: str, ecom_customer_id: str
    ) -> bool:
        ...

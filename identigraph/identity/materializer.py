"""
Graph Edge Materializer

Turns accepted match candidates into graph artifacts:
- one graph node per (org, entity_type, entity_id), upserted idempotently
- one active `same_person` edge per node pair, carrying match provenance
- a mirrored CRM ↔ e-commerce identity link for the legacy link table

The edge is the primary projection. A failed link write is logged and never
undoes the edge.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import structlog

from identigraph.kernel.time import Clock, utc_now

from .errors import EdgeInsertConflict, NodeCreationFailure
from .matcher import TIER_MATCH_TYPES
from .store import IdentityStore
from .types import (
    CRM_CONTACTS,
    ECOM_CUSTOMERS,
    SAME_PERSON,
    GraphEdge,
    IdentityLink,
    PersistedCandidate,
)

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class EdgeOutcome:
    edge_id: str
    state: Literal["created", "existing"]


def crm_ecom_pair(candidate: PersistedCandidate) -> tuple[str, str] | None:
    """(crm_contact_id, ecom_customer_id) when the candidate spans both, in either order."""
    types = (candidate.source_a_type, candidate.source_b_type)
    if types == (CRM_CONTACTS, ECOM_CUSTOMERS):
        return candidate.source_a_id, candidate.source_b_id
    if types == (ECOM_CUSTOMERS, CRM_CONTACTS):
        return candidate.source_b_id, candidate.source_a_id
    return None


class GraphEdgeMaterializer:
    """Writes graph nodes, identity edges and legacy links through the store."""

    def __init__(self, store: IdentityStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    async def ensure_graph_node(
        self,
        org_id: str,
        entity_type: str,
        entity_id: str,
        label: str,
        actor: str | None = None,
        sublabel: str | None = None,
    ) -> str:
        """Node id for the natural key; concurrent callers converge on one node.

        Raises:
            NodeCreationFailure: the upsert failed or returned no id
        """
        try:
            node_id = await self.store.ensure_graph_node(
                org_id,
                entity_type,
                entity_id,
                label=label,
                sublabel=sublabel,
                created_by=actor,
            )
        except NodeCreationFailure:
            raise
        except Exception as e:
            raise NodeCreationFailure(entity_type, entity_id, reason=str(e)) from e
        if not node_id:
            raise NodeCreationFailure(entity_type, entity_id, reason="no id returned")
        return node_id

    async def materialize_edge(
        self,
        org_id: str,
        run_id: str,
        candidate: PersistedCandidate,
        node_a: str,
        node_b: str,
        actor: str | None = None,
    ) -> EdgeOutcome:
        """Reuse the active edge between the nodes, or insert one for the candidate."""
        existing = await self.store.find_active_edge(org_id, node_a, node_b, SAME_PERSON)
        if existing:
            return EdgeOutcome(edge_id=existing, state="existing")

        edge = GraphEdge(
            org_id=org_id,
            source_node_id=node_a,
            target_node_id=node_b,
            relation_type=SAME_PERSON,
            weight=candidate.confidence,
            confidence=candidate.confidence,
            properties={
                "run_id": run_id,
                "match_tier": candidate.match_tier,
                "match_signals": list(candidate.match_signals),
                "matched_on": candidate.matched_on,
            },
            source="system",
            valid_from=self.clock(),
            created_by=actor,
        )
        try:
            edge_id = await self.store.insert_edge(edge)
        except EdgeInsertConflict:
            # Lost an insert race; the winner's edge realizes this candidate.
            winner = await self.store.find_active_edge(org_id, node_a, node_b, SAME_PERSON)
            if not winner:
                raise
            logger.debug("Edge insert raced, reusing existing edge", edge_id=winner)
            return EdgeOutcome(edge_id=winner, state="existing")
        return EdgeOutcome(edge_id=edge_id, state="created")

    async def link_identities(
        self, org_id: str, candidate: PersistedCandidate, actor: str | None = None
    ) -> bool:
        """Upsert the legacy CRM ↔ e-commerce link; True when a link was written."""
        pair = crm_ecom_pair(candidate)
        if pair is None:
            return False
        crm_id, ecom_id = pair
        try:
            return await self.store.upsert_identity_link(
                IdentityLink(
                    org_id=org_id,
                    crm_contact_id=crm_id,
                    ecom_customer_id=ecom_id,
                    match_type=TIER_MATCH_TYPES.get(candidate.match_tier, "email_exact"),
                    confidence=candidate.confidence,
                    matched_on=candidate.matched_on,
                    is_active=True,
                    linked_by=actor,
                )
            )
        except Exception as e:
            logger.warning(
                "Identity link upsert failed",
                candidate_id=candidate.id,
                crm_contact_id=crm_id,
                ecom_customer_id=ecom_id,
                error=str(e),
            )
            return False

    async def deactivate_edge(self, org_id: str, edge_id: str) -> bool:
        return await self.store.deactivate_edge(org_id, edge_id, at=self.clock())

    async def unlink_identities(self, org_id: str, candidate: PersistedCandidate) -> bool:
        pair = crm_ecom_pair(candidate)
        if pair is None:
            return False
        return await self.store.deactivate_identity_link(org_id, *pair)

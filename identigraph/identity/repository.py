"""
Postgres Identity Store

SQLAlchemy async implementation of the IdentityStore port. Every method opens
its own session through `get_db_session()`, so each call is one transaction
and carries the RLS org scope of the caller.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, ProgrammingError, SQLAlchemyError

from identigraph.db.client import get_db_session
from identigraph.kernel.time import coerce_utc

from .errors import EdgeInsertConflict, NodeCreationFailure, SourceQueryError, SourceUnavailable
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

logger = structlog.get_logger()

UNDEFINED_TABLE = "42P01"

_CANDIDATE_COLUMNS = """
    id, run_id, org_id,
    source_a_type, source_a_id, source_a_label,
    source_b_type, source_b_id, source_b_label,
    match_tier, confidence, match_signals, matched_on,
    needs_review, status, graph_edge_id
"""

_RUN_COLUMNS = "id, org_id, status, computed_at, applied_at, reversed_at, stats, created_by"


def _row_dict(row: Any) -> dict[str, Any]:
    return dict(row._mapping if hasattr(row, "_mapping") else row)


def _parse_json_field(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _is_missing_table(error: ProgrammingError) -> bool:
    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate == UNDEFINED_TABLE or "does not exist" in str(error)


def _run_from_row(row: Any) -> ResolutionRun:
    payload = _row_dict(row)
    payload["stats"] = _parse_json_field(payload.get("stats"))
    for column in ("computed_at", "applied_at", "reversed_at"):
        if payload.get(column) is not None:
            payload[column] = coerce_utc(payload[column])
    return ResolutionRun(**payload)


def _candidate_from_row(row: Any) -> PersistedCandidate:
    payload = _row_dict(row)
    payload["match_signals"] = list(payload.get("match_signals") or [])
    payload["confidence"] = float(payload["confidence"])
    return PersistedCandidate(**payload)


class PostgresIdentityStore:
    """IdentityStore backed by the application database."""

    # ------------------------------------------------------------------
    # Source records
    # ------------------------------------------------------------------

    async def fetch_source_rows(
        self, org_id: str, source: SourceDefinition, *, phone_only: bool = False
    ) -> list[dict[str, Any]]:
        if phone_only:
            condition = (
                f"({source.email_column} IS NULL OR {source.email_column} = '') "
                f"AND {source.phone_column} IS NOT NULL AND {source.phone_column} != ''"
            )
        else:
            condition = f"{source.email_column} IS NOT NULL AND {source.email_column} != ''"

        query = (
            f"SELECT {source.select_sql} FROM {source.from_sql} "
            f"WHERE {source.org_column} = :org_id AND {condition}"
        )
        try:
            async with get_db_session() as session:
                result = await session.execute(text(query), {"org_id": org_id})
                rows = result.fetchall()
        except ProgrammingError as e:
            if _is_missing_table(e):
                raise SourceUnavailable(source.table) from e
            raise SourceQueryError(source.table, reason=str(e)) from e
        except SQLAlchemyError as e:
            raise SourceQueryError(source.table, reason=str(e)) from e

        return [_row_dict(row) for row in rows]

    async def count_source_rows(self, org_id: str, source: SourceDefinition) -> int:
        query = f"SELECT COUNT(*) FROM {source.from_sql} WHERE {source.org_column} = :org_id"
        try:
            async with get_db_session() as session:
                result = await session.execute(text(query), {"org_id": org_id})
                return int(result.scalar() or 0)
        except ProgrammingError as e:
            if _is_missing_table(e):
                raise SourceUnavailable(source.table) from e
            raise SourceQueryError(source.table, reason=str(e)) from e
        except SQLAlchemyError as e:
            raise SourceQueryError(source.table, reason=str(e)) from e

    # ------------------------------------------------------------------
    # Run ledger
    # ------------------------------------------------------------------

    async def create_run(
        self,
        org_id: str,
        *,
        stats: dict[str, Any],
        computed_at: datetime,
        created_by: str | None,
    ) -> ResolutionRun:
        run_id = str(uuid4())
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO identity_resolution_runs (
                        id, org_id, status, computed_at, stats, created_by
                    ) VALUES (
                        :id, :org_id, :status, :computed_at, CAST(:stats AS JSONB), :created_by
                    )
                    """
                ),
                {
                    "id": run_id,
                    "org_id": org_id,
                    "status": RunStatus.PENDING_REVIEW.value,
                    "computed_at": computed_at,
                    "stats": json.dumps(stats, sort_keys=True),
                    "created_by": created_by,
                },
            )
        return ResolutionRun(
            id=run_id,
            org_id=org_id,
            status=RunStatus.PENDING_REVIEW,
            computed_at=computed_at,
            stats=stats,
            created_by=created_by,
        )

    async def get_run(self, org_id: str, run_id: str) -> ResolutionRun | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    f"""
                    SELECT {_RUN_COLUMNS}
                    FROM identity_resolution_runs
                    WHERE id = :run_id AND org_id = :org_id
                    """
                ),
                {"run_id": run_id, "org_id": org_id},
            )
            row = result.fetchone()
        return _run_from_row(row) if row else None

    async def list_runs(
        self, org_id: str, *, status: RunStatus | None = None, limit: int = 5
    ) -> list[ResolutionRun]:
        params: dict[str, Any] = {"org_id": org_id, "limit": limit}
        status_filter = ""
        if status is not None:
            status_filter = "AND status = :status"
            params["status"] = RunStatus(status).value
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    f"""
                    SELECT {_RUN_COLUMNS}
                    FROM identity_resolution_runs
                    WHERE org_id = :org_id {status_filter}
                    ORDER BY computed_at DESC
                    LIMIT :limit
                    """
                ),
                params,
            )
            rows = result.fetchall()
        return [_run_from_row(row) for row in rows]

    async def update_run_status(
        self, org_id: str, run_id: str, status: RunStatus, *, at: datetime
    ) -> None:
        stamp = ""
        if status in (RunStatus.APPLIED, RunStatus.PARTIALLY_APPLIED):
            stamp = ", applied_at = :at"
        elif status == RunStatus.REVERSED:
            stamp = ", reversed_at = :at"
        async with get_db_session() as session:
            await session.execute(
                text(
                    f"""
                    UPDATE identity_resolution_runs
                    SET status = :status{stamp}
                    WHERE id = :run_id AND org_id = :org_id
                    """
                ),
                {"status": RunStatus(status).value, "at": at, "run_id": run_id, "org_id": org_id},
            )

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    async def insert_candidates(
        self, org_id: str, run_id: str, candidates: list[MatchCandidate]
    ) -> int:
        if not candidates:
            return 0
        params = [
            {
                "id": str(uuid4()),
                "run_id": run_id,
                "org_id": org_id,
                "source_a_type": c.record_a.source,
                "source_a_id": c.record_a.id,
                "source_a_label": c.record_a.label,
                "source_b_type": c.record_b.source,
                "source_b_id": c.record_b.id,
                "source_b_label": c.record_b.label,
                "match_tier": c.tier,
                "confidence": c.confidence,
                "match_signals": list(c.signals),
                "matched_on": c.matched_on,
                "needs_review": c.needs_review,
            }
            for c in candidates
        ]
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO identity_match_candidates (
                        id, run_id, org_id,
                        source_a_type, source_a_id, source_a_label,
                        source_b_type, source_b_id, source_b_label,
                        match_tier, confidence, match_signals, matched_on, needs_review
                    ) VALUES (
                        :id, :run_id, :org_id,
                        :source_a_type, :source_a_id, :source_a_label,
                        :source_b_type, :source_b_id, :source_b_label,
                        :match_tier, :confidence, :match_signals, :matched_on, :needs_review
                    )
                    """
                ),
                params,
            )
        return len(params)

    async def list_candidates(
        self,
        org_id: str,
        run_id: str,
        *,
        statuses: list[CandidateStatus] | None = None,
        ids: list[str] | None = None,
        limit: int | None = None,
    ) -> list[PersistedCandidate]:
        params: dict[str, Any] = {"org_id": org_id, "run_id": run_id}
        conditions = ["run_id = :run_id", "org_id = :org_id"]
        if statuses is not None:
            conditions.append("status = ANY(:statuses)")
            params["statuses"] = [CandidateStatus(s).value for s in statuses]
        if ids is not None:
            conditions.append("id = ANY(:ids)")
            params["ids"] = list(ids)
        limit_clause = ""
        if limit is not None:
            limit_clause = "LIMIT :limit"
            params["limit"] = limit

        async with get_db_session() as session:
            result = await session.execute(
                text(
                    f"""
                    SELECT {_CANDIDATE_COLUMNS}
                    FROM identity_match_candidates
                    WHERE {" AND ".join(conditions)}
                    ORDER BY match_tier ASC, confidence DESC, id ASC
                    {limit_clause}
                    """
                ),
                params,
            )
            rows = result.fetchall()
        return [_candidate_from_row(row) for row in rows]

    async def set_candidate_status(
        self, org_id: str, run_id: str, candidate_ids: list[str], status: CandidateStatus
    ) -> int:
        if not candidate_ids:
            return 0
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    UPDATE identity_match_candidates
                    SET status = :status
                    WHERE run_id = :run_id AND org_id = :org_id AND id = ANY(:ids)
                    """
                ),
                {
                    "status": CandidateStatus(status).value,
                    "run_id": run_id,
                    "org_id": org_id,
                    "ids": list(candidate_ids),
                },
            )
            return result.rowcount or 0

    async def accept_candidate(self, org_id: str, candidate_id: str, edge_id: str) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    UPDATE identity_match_candidates
                    SET status = 'accepted', graph_edge_id = :edge_id
                    WHERE id = :id AND org_id = :org_id
                    """
                ),
                {"edge_id": edge_id, "id": candidate_id, "org_id": org_id},
            )

    async def count_candidates(
        self, org_id: str, run_id: str, *, exclude_status: CandidateStatus | None = None
    ) -> int:
        params: dict[str, Any] = {"org_id": org_id, "run_id": run_id}
        status_filter = ""
        if exclude_status is not None:
            status_filter = "AND status != :exclude_status"
            params["exclude_status"] = CandidateStatus(exclude_status).value
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    f"""
                    SELECT COUNT(*) FROM identity_match_candidates
                    WHERE run_id = :run_id AND org_id = :org_id {status_filter}
                    """
                ),
                params,
            )
            return int(result.scalar() or 0)

    async def reset_accepted_candidates(
        self, org_id: str, run_id: str, *, exclude_ids: list[str] | None = None
    ) -> int:
        params: dict[str, Any] = {"run_id": run_id, "org_id": org_id}
        exclude_filter = ""
        if exclude_ids:
            exclude_filter = "AND NOT (id = ANY(:exclude_ids))"
            params["exclude_ids"] = list(exclude_ids)
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    f"""
                    UPDATE identity_match_candidates
                    SET status = 'pending', graph_edge_id = NULL
                    WHERE run_id = :run_id AND org_id = :org_id AND status = 'accepted'
                    {exclude_filter}
                    """
                ),
                params,
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

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
        try:
            async with get_db_session() as session:
                result = await session.execute(
                    text(
                        """
                        INSERT INTO graph_nodes (
                            id, org_id, entity_type, entity_id, label, sublabel, created_by
                        ) VALUES (
                            :id, :org_id, :entity_type, :entity_id, :label, :sublabel, :created_by
                        )
                        ON CONFLICT (org_id, entity_type, entity_id) DO UPDATE
                        SET label = EXCLUDED.label,
                            sublabel = COALESCE(EXCLUDED.sublabel, graph_nodes.sublabel),
                            updated_at = now()
                        RETURNING id
                        """
                    ),
                    {
                        "id": str(uuid4()),
                        "org_id": org_id,
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "label": label,
                        "sublabel": sublabel,
                        "created_by": created_by,
                    },
                )
                node_id = result.scalar()
        except SQLAlchemyError as e:
            raise NodeCreationFailure(entity_type, entity_id, reason=str(e)) from e
        if not node_id:
            raise NodeCreationFailure(entity_type, entity_id, reason="no id returned")
        return str(node_id)

    async def find_active_edge(
        self, org_id: str, node_a: str, node_b: str, relation_type: str
    ) -> str | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT id FROM graph_edges
                    WHERE org_id = :org_id
                      AND relation_type = :relation_type
                      AND valid_until IS NULL
                      AND (
                        (source_node_id = :node_a AND target_node_id = :node_b)
                        OR (source_node_id = :node_b AND target_node_id = :node_a)
                      )
                    LIMIT 1
                    """
                ),
                {
                    "org_id": org_id,
                    "relation_type": relation_type,
                    "node_a": node_a,
                    "node_b": node_b,
                },
            )
            edge_id = result.scalar()
        return str(edge_id) if edge_id else None

    async def insert_edge(self, edge: GraphEdge) -> str:
        edge_id = edge.id or str(uuid4())
        try:
            async with get_db_session() as session:
                await session.execute(
                    text(
                        """
                        INSERT INTO graph_edges (
                            id, org_id, source_node_id, target_node_id, relation_type,
                            weight, confidence, properties, source, valid_from, created_by
                        ) VALUES (
                            :id, :org_id, :source_node_id, :target_node_id, :relation_type,
                            :weight, :confidence, CAST(:properties AS JSONB), :source,
                            :valid_from, :created_by
                        )
                        """
                    ),
                    {
                        "id": edge_id,
                        "org_id": edge.org_id,
                        "source_node_id": edge.source_node_id,
                        "target_node_id": edge.target_node_id,
                        "relation_type": edge.relation_type,
                        "weight": edge.weight,
                        "confidence": edge.confidence,
                        "properties": json.dumps(edge.properties, sort_keys=True),
                        "source": edge.source,
                        "valid_from": edge.valid_from,
                        "created_by": edge.created_by,
                    },
                )
        except IntegrityError as e:
            raise EdgeInsertConflict(edge.source_node_id, edge.target_node_id) from e
        return edge_id

    async def deactivate_edge(self, org_id: str, edge_id: str, *, at: datetime) -> bool:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    UPDATE graph_edges
                    SET valid_until = :at
                    WHERE id = :id AND org_id = :org_id AND valid_until IS NULL
                    """
                ),
                {"at": at, "id": edge_id, "org_id": org_id},
            )
            return (result.rowcount or 0) > 0

    async def find_graph_nodes(
        self, org_id: str, entity_keys: list[tuple[str, str]]
    ) -> list[GraphNode]:
        if not entity_keys:
            return []
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT id, org_id, entity_type, entity_id, label, sublabel
                    FROM graph_nodes
                    WHERE org_id = :org_id
                      AND (entity_type || ':' || entity_id) = ANY(:keys)
                    """
                ),
                {"org_id": org_id, "keys": [f"{t}:{i}" for t, i in entity_keys]},
            )
            rows = result.fetchall()
        return [GraphNode(**_row_dict(row)) for row in rows]

    async def list_active_edges(
        self, org_id: str, node_ids: list[str], relation_type: str
    ) -> list[tuple[str, str]]:
        if not node_ids:
            return []
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT source_node_id, target_node_id
                    FROM graph_edges
                    WHERE org_id = :org_id
                      AND relation_type = :relation_type
                      AND valid_until IS NULL
                      AND source_node_id = ANY(:node_ids)
                      AND target_node_id = ANY(:node_ids)
                    """
                ),
                {"org_id": org_id, "relation_type": relation_type, "node_ids": list(node_ids)},
            )
            rows = result.fetchall()
        return [(str(row[0]), str(row[1])) for row in rows]

    async def count_active_edges(self, org_id: str, relation_type: str) -> int:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT COUNT(*) FROM graph_edges
                    WHERE org_id = :org_id
                      AND relation_type = :relation_type
                      AND valid_until IS NULL
                    """
                ),
                {"org_id": org_id, "relation_type": relation_type},
            )
            return int(result.scalar() or 0)

    # ------------------------------------------------------------------
    # Legacy pairwise links
    # ------------------------------------------------------------------

    async def upsert_identity_link(self, link: IdentityLink) -> bool:
        # Inactive links are reactivated; active duplicates are left untouched.
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    INSERT INTO customer_identity_links (
                        id, org_id, crm_contact_id, ecom_customer_id,
                        match_type, confidence, matched_on, is_active, linked_by
                    ) VALUES (
                        :id, :org_id, :crm_contact_id, :ecom_customer_id,
                        :match_type, :confidence, :matched_on, :is_active, :linked_by
                    )
                    ON CONFLICT (org_id, crm_contact_id, ecom_customer_id) DO UPDATE
                    SET is_active = EXCLUDED.is_active,
                        match_type = EXCLUDED.match_type,
                        confidence = EXCLUDED.confidence,
                        matched_on = EXCLUDED.matched_on,
                        linked_by = EXCLUDED.linked_by,
                        linked_at = now()
                    WHERE customer_identity_links.is_active = false
                    RETURNING id
                    """
                ),
                {
                    "id": str(uuid4()),
                    "org_id": link.org_id,
                    "crm_contact_id": link.crm_contact_id,
                    "ecom_customer_id": link.ecom_customer_id,
                    "match_type": link.match_type,
                    "confidence": link.confidence,
                    "matched_on": link.matched_on,
                    "linked_by": link.linked_by,
                    "is_active": link.is_active,
                },
            )
            return result.scalar() is not None

    async def deactivate_identity_link(
        self, org_id: str, crm_contact_id: str, ecom_customer_id: str
    ) -> bool:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    UPDATE customer_identity_links
                    SET is_active = false
                    WHERE org_id = :org_id
                      AND crm_contact_id = :crm_contact_id
                      AND ecom_customer_id = :ecom_customer_id
                      AND is_active = true
                    """
                ),
                {
                    "org_id": org_id,
                    "crm_contact_id": crm_contact_id,
                    "ecom_customer_id": ecom_customer_id,
                },
            )
            return (result.rowcount or 0) > 0

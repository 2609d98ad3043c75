from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError

from identigraph.identity.errors import (
    EdgeInsertConflict,
    NodeCreationFailure,
    SourceQueryError,
    SourceUnavailable,
)
from identigraph.identity.repository import PostgresIdentityStore
from identigraph.identity.sources import IDENTITY_SOURCES
from identigraph.identity.types import GraphEdge, IdentityLink, RunStatus

MODULE = "identigraph.identity.repository.get_db_session"


class FakeResult:
    def __init__(self, rows=None, scalar=None, rowcount=0):
        self._rows = rows or []
        self._scalar = scalar
        self.rowcount = rowcount

    def fetchall(self):
        return self._rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def scalar(self):
        return self._scalar


class FakeSessionContext:
    def __init__(self, session):
        self._session = session

    async def __aenter__(self):
        return self._session

    async def __aexit__(self, exc_type, exc, tb):
        return None


def _patch_session(monkeypatch, session):
    monkeypatch.setattr(MODULE, lambda: FakeSessionContext(session))


def _row(**values):
    return SimpleNamespace(_mapping=values)


@pytest.mark.asyncio
async def test_fetch_source_rows_filters_by_org_and_email(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(return_value=FakeResult(rows=[_row(id="c1", email="a@x.com")]))
    _patch_session(monkeypatch, session)

    rows = await PostgresIdentityStore().fetch_source_rows("org-1", IDENTITY_SOURCES["crm_contacts"])

    assert rows == [{"id": "c1", "email": "a@x.com"}]
    statement, params = session.execute.call_args.args
    sql = str(statement)
    assert "c.org_id = :org_id" in sql
    assert "c.email IS NOT NULL" in sql
    assert params == {"org_id": "org-1"}


@pytest.mark.asyncio
async def test_phone_only_query_excludes_email_rows(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(return_value=FakeResult())
    _patch_session(monkeypatch, session)

    await PostgresIdentityStore().fetch_source_rows(
        "org-1", IDENTITY_SOURCES["klaviyo_profiles"], phone_only=True
    )

    sql = str(session.execute.call_args.args[0])
    assert "k.email IS NULL OR k.email = ''" in sql
    assert "k.phone_number IS NOT NULL" in sql


@pytest.mark.asyncio
async def test_missing_table_maps_to_source_unavailable(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(
        side_effect=ProgrammingError("SELECT", {}, Exception('relation "klaviyo_profiles" does not exist'))
    )
    _patch_session(monkeypatch, session)

    with pytest.raises(SourceUnavailable):
        await PostgresIdentityStore().fetch_source_rows("org-1", IDENTITY_SOURCES["klaviyo_profiles"])


@pytest.mark.asyncio
async def test_other_read_errors_map_to_source_query_error(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("timeout")))
    _patch_session(monkeypatch, session)

    with pytest.raises(SourceQueryError):
        await PostgresIdentityStore().count_source_rows("org-1", IDENTITY_SOURCES["crm_contacts"])


@pytest.mark.asyncio
async def test_get_run_parses_stats_and_status(monkeypatch):
    computed = datetime(2026, 1, 1)
    session = AsyncMock()
    session.execute = AsyncMock(
        return_value=FakeResult(
            rows=[
                _row(
                    id="run-1",
                    org_id="org-1",
                    status="partially_applied",
                    computed_at=computed,
                    applied_at=None,
                    reversed_at=None,
                    stats='{"total_candidates": 3}',
                    created_by=None,
                )
            ]
        )
    )
    _patch_session(monkeypatch, session)

    run = await PostgresIdentityStore().get_run("org-1", "run-1")

    assert run.status == RunStatus.PARTIALLY_APPLIED
    assert run.stats == {"total_candidates": 3}
    assert run.computed_at.tzinfo == timezone.utc


@pytest.mark.asyncio
async def test_get_run_missing_returns_none(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(return_value=FakeResult())
    _patch_session(monkeypatch, session)

    assert await PostgresIdentityStore().get_run("org-1", "nope") is None


@pytest.mark.asyncio
async def test_ensure_graph_node_upserts_on_natural_key(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(return_value=FakeResult(scalar="node-1"))
    _patch_session(monkeypatch, session)

    node_id = await PostgresIdentityStore().ensure_graph_node(
        "org-1", "crm_contacts", "c1", label="Jane"
    )

    assert node_id == "node-1"
    sql = str(session.execute.call_args.args[0])
    assert "ON CONFLICT (org_id, entity_type, entity_id) DO UPDATE" in sql
    assert "RETURNING id" in sql


@pytest.mark.asyncio
async def test_ensure_graph_node_without_id_fails(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(return_value=FakeResult(scalar=None))
    _patch_session(monkeypatch, session)

    with pytest.raises(NodeCreationFailure):
        await PostgresIdentityStore().ensure_graph_node("org-1", "crm_contacts", "c1", label="Jane")


@pytest.mark.asyncio
async def test_insert_edge_unique_violation_is_conflict(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(
        side_effect=IntegrityError("INSERT", {}, Exception("uq_graph_edges_active_pair"))
    )
    _patch_session(monkeypatch, session)
    edge = GraphEdge(
        org_id="org-1",
        source_node_id="n1",
        target_node_id="n2",
        valid_from=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )

    with pytest.raises(EdgeInsertConflict):
        await PostgresIdentityStore().insert_edge(edge)


@pytest.mark.asyncio
async def test_upsert_identity_link_ignores_active_duplicates(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(side_effect=[FakeResult(scalar="link-1"), FakeResult(scalar=None)])
    _patch_session(monkeypatch, session)
    store = PostgresIdentityStore()
    link = IdentityLink(org_id="org-1", crm_contact_id="c1", ecom_customer_id="e1")

    assert await store.upsert_identity_link(link) is True
    assert await store.upsert_identity_link(link) is False
    sql = str(session.execute.call_args.args[0])
    assert "WHERE customer_identity_links.is_active = false" in sql


@pytest.mark.asyncio
async def test_upsert_identity_link_binds_is_active(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(return_value=FakeResult(scalar="link-1"))
    _patch_session(monkeypatch, session)
    store = PostgresIdentityStore()
    link = IdentityLink(org_id="org-1", crm_contact_id="c1", ecom_customer_id="e1", is_active=False)

    await store.upsert_identity_link(link)

    sql = str(session.execute.call_args.args[0])
    assert ":is_active" in sql
    assert "SET is_active = EXCLUDED.is_active" in sql
    assert session.execute.call_args.args[1]["is_active"] is False


@pytest.mark.asyncio
async def test_reset_accepted_candidates_skips_excluded_ids(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(side_effect=[FakeResult(rowcount=3), FakeResult(rowcount=2)])
    _patch_session(monkeypatch, session)
    store = PostgresIdentityStore()

    assert await store.reset_accepted_candidates("org-1", "run-1") == 3
    assert "exclude_ids" not in str(session.execute.call_args.args[0])

    assert await store.reset_accepted_candidates("org-1", "run-1", exclude_ids=["cand-9"]) == 2
    assert "NOT (id = ANY(:exclude_ids))" in str(session.execute.call_args.args[0])
    assert session.execute.call_args.args[1]["exclude_ids"] == ["cand-9"]


@pytest.mark.asyncio
async def test_deactivate_edge_reports_whether_edge_was_active(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(side_effect=[FakeResult(rowcount=1), FakeResult(rowcount=0)])
    _patch_session(monkeypatch, session)
    store = PostgresIdentityStore()
    at = datetime(2026, 1, 1, tzinfo=timezone.utc)

    assert await store.deactivate_edge("org-1", "edge-1", at=at) is True
    assert await store.deactivate_edge("org-1", "edge-1", at=at) is False


@pytest.mark.asyncio
async def test_list_candidates_orders_for_review(monkeypatch):
    session = AsyncMock()
    session.execute = AsyncMock(
        return_value=FakeResult(
            rows=[
                _row(
                    id="cand-1",
                    run_id="run-1",
                    org_id="org-1",
                    source_a_type="crm_contacts",
                    source_a_id="c1",
                    source_a_label="Jane",
                    source_b_type="ecom_customers",
                    source_b_id="e1",
                    source_b_label="Jane",
                    match_tier=1,
                    confidence="0.99",
                    match_signals=["email"],
                    matched_on="jane@acme.com",
                    needs_review=False,
                    status="pending",
                    graph_edge_id=None,
                )
            ]
        )
    )
    _patch_session(monkeypatch, session)

    candidates = await PostgresIdentityStore().list_candidates("org-1", "run-1", limit=10)

    assert candidates[0].confidence == 0.99
    statement, params = session.execute.call_args.args
    assert "ORDER BY match_tier ASC, confidence DESC" in str(statement)
    assert params["limit"] == 10

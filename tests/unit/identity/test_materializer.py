from __future__ import annotations

import asyncio

import pytest

from identigraph.identity.errors import NodeCreationFailure
from identigraph.identity.materializer import GraphEdgeMaterializer, crm_ecom_pair
from identigraph.identity.types import PersistedCandidate
from tests.support.identity_store import FakeIdentityStore


def _candidate(a_type="crm_contacts", a_id="c1", b_type="ecom_customers", b_id="e1", tier=1, confidence=0.99):
    return PersistedCandidate(
        id="cand-1",
        run_id="run-1",
        org_id="org-1",
        source_a_type=a_type,
        source_a_id=a_id,
        source_a_label="Jane Doe",
        source_b_type=b_type,
        source_b_id=b_id,
        source_b_label="jane@acme.com",
        match_tier=tier,
        confidence=confidence,
        match_signals=["email"],
        matched_on="jane@acme.com",
    )


@pytest.mark.unit
def test_crm_ecom_pair_in_either_order():
    assert crm_ecom_pair(_candidate()) == ("c1", "e1")
    reversed_pair = _candidate(a_type="ecom_customers", a_id="e1", b_type="crm_contacts", b_id="c1")
    assert crm_ecom_pair(reversed_pair) == ("c1", "e1")
    assert crm_ecom_pair(_candidate(b_type="klaviyo_profiles")) is None


@pytest.mark.asyncio
async def test_ensure_graph_node_converges_on_one_id(fake_clock):
    store = FakeIdentityStore()
    materializer = GraphEdgeMaterializer(store, fake_clock)

    first = await materializer.ensure_graph_node("org-1", "crm_contacts", "c1", "Jane")
    second = await materializer.ensure_graph_node("org-1", "crm_contacts", "c1", "Jane Doe")

    assert first == second
    assert len(store.nodes) == 1
    assert store.nodes[("org-1", "crm_contacts", "c1")].label == "Jane Doe"


@pytest.mark.asyncio
async def test_concurrent_ensure_graph_node_calls_share_one_node(fake_clock):
    store = FakeIdentityStore(interleave=True)
    materializer = GraphEdgeMaterializer(store, fake_clock)

    ids = await asyncio.gather(
        *(materializer.ensure_graph_node("org-1", "crm_contacts", "c1", "Jane") for _ in range(5))
    )

    assert len(set(ids)) == 1
    assert len(store.nodes) == 1


@pytest.mark.asyncio
async def test_ensure_graph_node_wraps_failures(fake_clock):
    store = FakeIdentityStore(failing_nodes={("crm_contacts", "c1")})
    materializer = GraphEdgeMaterializer(store, fake_clock)

    with pytest.raises(NodeCreationFailure):
        await materializer.ensure_graph_node("org-1", "crm_contacts", "c1", "Jane")


@pytest.mark.asyncio
async def test_materialize_edge_records_provenance(fake_clock):
    store = FakeIdentityStore()
    materializer = GraphEdgeMaterializer(store, fake_clock)

    outcome = await materializer.materialize_edge("org-1", "run-1", _candidate(), "n1", "n2", "ops")

    assert outcome.state == "created"
    edge = store.edges[outcome.edge_id]
    assert edge.relation_type == "same_person"
    assert edge.weight == edge.confidence == 0.99
    assert edge.source == "system"
    assert edge.valid_from == fake_clock.now()
    assert edge.created_by == "ops"
    assert edge.properties == {
        "run_id": "run-1",
        "match_tier": 1,
        "match_signals": ["email"],
        "matched_on": "jane@acme.com",
    }


@pytest.mark.asyncio
async def test_existing_edge_in_either_direction_is_reused(fake_clock):
    store = FakeIdentityStore()
    materializer = GraphEdgeMaterializer(store, fake_clock)

    created = await materializer.materialize_edge("org-1", "run-1", _candidate(), "n1", "n2")
    again = await materializer.materialize_edge("org-1", "run-2", _candidate(), "n2", "n1")

    assert again.state == "existing"
    assert again.edge_id == created.edge_id
    assert len(store.edges) == 1


@pytest.mark.asyncio
async def test_lost_insert_race_counts_as_existing(fake_clock):
    store = FakeIdentityStore(preempt_next_edge_insert=True)
    materializer = GraphEdgeMaterializer(store, fake_clock)

    outcome = await materializer.materialize_edge("org-1", "run-1", _candidate(), "n1", "n2")

    assert outcome.state == "existing"
    assert len(store.active_edges()) == 1
    assert store.edges[outcome.edge_id].created_by == "other"


@pytest.mark.asyncio
async def test_link_identities_uses_tier_match_type(fake_clock):
    store = FakeIdentityStore()
    materializer = GraphEdgeMaterializer(store, fake_clock)

    assert await materializer.link_identities("org-1", _candidate(tier=2, confidence=0.9), "ops")
    link = store.links[("org-1", "c1", "e1")]
    assert link.match_type == "phone_match"
    assert link.linked_by == "ops"

    # Active duplicate is ignored
    assert not await materializer.link_identities("org-1", _candidate(tier=2, confidence=0.9))


@pytest.mark.asyncio
async def test_link_failure_is_swallowed(fake_clock):
    store = FakeIdentityStore(fail_link_upserts=True)
    materializer = GraphEdgeMaterializer(store, fake_clock)

    assert await materializer.link_identities("org-1", _candidate()) is False


@pytest.mark.asyncio
async def test_non_crm_ecom_pairs_get_no_link(fake_clock):
    store = FakeIdentityStore()
    materializer = GraphEdgeMaterializer(store, fake_clock)

    assert await materializer.link_identities("org-1", _candidate(b_type="klaviyo_profiles")) is False
    assert store.links == {}


@pytest.mark.asyncio
async def test_deactivate_edge_only_counts_active_edges(fake_clock):
    store = FakeIdentityStore()
    materializer = GraphEdgeMaterializer(store, fake_clock)
    outcome = await materializer.materialize_edge("org-1", "run-1", _candidate(), "n1", "n2")

    assert await materializer.deactivate_edge("org-1", outcome.edge_id) is True
    assert await materializer.deactivate_edge("org-1", outcome.edge_id) is False
    assert store.edges[outcome.edge_id].valid_until == fake_clock.now()

"""
Presentation Merge

Collapses displayed person rows that the identity graph says are the same
person. Rows are the union-find elements; every active `same_person` edge
between two displayed rows unions them. Each component of more than one row
becomes a single row led by the highest-priority source, with empty fields
filled from the other members.
"""

from __future__ import annotations

from typing import Iterable

import structlog

from identigraph.config import Settings, get_settings
from identigraph.db.rls import org_scope

from .repository import PostgresIdentityStore
from .store import IdentityStore
from .types import SAME_PERSON, PersonRow

logger = structlog.get_logger()

# Fields a merged row may inherit from other members
FILLABLE_FIELDS = (
    "name",
    "email",
    "phone",
    "company",
    "title",
    "city",
    "status",
    "orders_count",
    "total_spent",
    "avg_order_value",
    "last_order_at",
)


class DisjointSet:
    """Union-find over positions 0..n-1 with path compression and union by rank."""

    def __init__(self, size: int):
        self.parent = list(range(size))
        self.rank = [0] * size

    def find(self, x: int) -> int:
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1


def _is_empty(value: object) -> bool:
    return value is None or value == ""


def merge_people(
    rows: list[PersonRow],
    links: Iterable[tuple[str, str]],
    source_priority: list[str],
) -> list[PersonRow]:
    """
    Merge rows connected by `links`.

    Args:
        rows: Displayed rows; order is preserved for the output.
        links: Pairs of `source:id` entity keys. Keys that are not displayed
            are ignored.
        source_priority: Source names, highest priority first. Unknown
            sources rank after all known ones.

    Returns:
        One row per connected component, in first-appearance order.
    """
    position = {row.entity_key: i for i, row in enumerate(rows)}
    ds = DisjointSet(len(rows))
    for key_a, key_b in links:
        a, b = position.get(key_a), position.get(key_b)
        if a is None or b is None:
            continue
        ds.union(a, b)

    components: dict[int, list[int]] = {}
    for i in range(len(rows)):
        components.setdefault(ds.find(i), []).append(i)

    rank = {source: i for i, source in enumerate(source_priority)}
    unknown_rank = len(source_priority)

    merged: list[PersonRow] = []
    for members in components.values():
        if len(members) == 1:
            merged.append(rows[members[0]])
            continue

        # Stable sort keeps row order among equal-priority members.
        ordered = sorted(members, key=lambda i: rank.get(rows[i].source, unknown_rank))
        primary = rows[ordered[0]]
        updates: dict[str, object] = {}
        for field in FILLABLE_FIELDS:
            if not _is_empty(getattr(primary, field)):
                continue
            for i in ordered[1:]:
                value = getattr(rows[i], field)
                if not _is_empty(value):
                    updates[field] = value
                    break

        sources: list[str] = []
        for i in ordered:
            for source in rows[i].sources or [rows[i].source]:
                if source not in sources:
                    sources.append(source)

        merged.append(
            primary.model_copy(update={**updates, "sources": sources, "is_multi_source": True})
        )

    return merged


async def load_merged_people(
    org_id: str,
    rows: list[PersonRow],
    store: IdentityStore | None = None,
    settings: Settings | None = None,
) -> list[PersonRow]:
    """Load graph links among `rows` and merge them; unmerged rows on failure."""
    settings = settings or get_settings()
    store = store or PostgresIdentityStore()
    if len(rows) < 2:
        return rows

    entity_keys = [(row.source, row.id) for row in rows]
    try:
        with org_scope(org_id):
            nodes = await store.find_graph_nodes(org_id, entity_keys)
            node_keys = {node.id: f"{node.entity_type}:{node.entity_id}" for node in nodes}
            edges = await store.list_active_edges(org_id, list(node_keys), SAME_PERSON)
    except Exception as e:
        logger.warning("Failed to load identity links, returning unmerged rows", error=str(e))
        return rows

    links = [
        (node_keys[source], node_keys[target])
        for source, target in edges
        if source in node_keys and target in node_keys
    ]
    return merge_people(rows, links, settings.identity_source_priority)

"""Read-only identity counts for reporting."""

from __future__ import annotations

import structlog

from identigraph.config import Settings, get_settings
from identigraph.db.rls import org_scope

from .errors import SourceUnavailable
from .repository import PostgresIdentityStore
from .sources import configured_sources
from .store import IdentityStore
from .types import SAME_PERSON, IdentitySummary

logger = structlog.get_logger()


async def get_identity_summary(
    org_id: str,
    store: IdentityStore | None = None,
    settings: Settings | None = None,
) -> IdentitySummary | None:
    """
    Unified people across sources.

    Each active `same_person` edge merges two records, so the unified count is
    total records minus active edges. Returns None when the store cannot be read.
    """
    settings = settings or get_settings()
    store = store or PostgresIdentityStore()
    source_counts: dict[str, int] = {}
    try:
        with org_scope(org_id):
            for source in configured_sources(settings.identity_sources):
                try:
                    source_counts[source.table] = await store.count_source_rows(org_id, source)
                except SourceUnavailable:
                    continue
            active_edges = await store.count_active_edges(org_id, SAME_PERSON)
    except Exception as e:
        logger.warning("Failed to load identity summary", org_id=org_id, error=str(e))
        return None

    total_records = sum(source_counts.values())
    return IdentitySummary(
        total_unified_people=max(total_records - active_edges, 0),
        cross_source_linked=active_edges,
        sources_active=[table for table, count in source_counts.items() if count > 0],
        source_counts=source_counts,
    )

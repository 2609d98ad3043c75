"""
Source Record Loader

Pulls matchable rows from every configured source and normalizes them into
IdentityRecords. Sources load concurrently into separate lists that are merged
in configured order afterwards. A missing or failing source is skipped; the
load as a whole never aborts.
"""

from __future__ import annotations

import asyncio

import structlog

from .errors import SourceQueryError, SourceUnavailable
from .sources import IDENTITY_SOURCES, SourceDefinition
from .store import IdentityStore
from .types import IdentityRecord, LoadResult

logger = structlog.get_logger()


class SourceRecordLoader:
    """Loads normalized identity records for one organization."""

    def __init__(self, store: IdentityStore, source_names: list[str]):
        self.store = store
        self.source_names = list(source_names)

    async def load(self, org_id: str) -> LoadResult:
        sources: list[SourceDefinition] = []
        for name in self.source_names:
            source = IDENTITY_SOURCES.get(name)
            if source is None:
                logger.debug("Identity source not configured, skipping", source=name)
                continue
            sources.append(source)

        per_source = await asyncio.gather(
            *(self._load_source(org_id, source) for source in sources)
        )

        result = LoadResult()
        for source, records in zip(sources, per_source):
            if records is None:
                continue
            result.records.extend(records)
            result.source_counts[source.table] = len(records)

        logger.debug(
            "Identity records loaded",
            org_id=org_id,
            total=len(result.records),
            sources=result.source_counts,
        )
        return result

    async def _load_source(
        self, org_id: str, source: SourceDefinition
    ) -> list[IdentityRecord] | None:
        """Email rows then phone-only rows; None when the source is unusable."""
        try:
            rows = await self.store.fetch_source_rows(org_id, source)
        except SourceUnavailable:
            logger.debug("Identity source unavailable, skipping", source=source.table)
            return None
        except SourceQueryError as e:
            logger.warning("Identity source query failed", source=source.table, error=e.message)
            return None
        except Exception as e:
            logger.warning("Failed to load identity source", source=source.table, error=str(e))
            return None

        records: list[IdentityRecord] = []
        seen: set[str] = set()
        for row in rows:
            record = source.build_record(row)
            if not record.email:
                continue
            records.append(record)
            seen.add(record.id)

        # Phone-only rows support phone-tier matching for partial records.
        try:
            phone_rows = await self.store.fetch_source_rows(org_id, source, phone_only=True)
        except Exception as e:
            logger.warning(
                "Phone-only identity query failed",
                source=source.table,
                error=getattr(e, "message", str(e)),
            )
            return records

        for row in phone_rows:
            record = source.build_record(row)
            if not record.phone or record.id in seen:
                continue
            records.append(record)
            seen.add(record.id)

        return records

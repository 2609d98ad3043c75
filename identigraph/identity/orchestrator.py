"""
Resolution Orchestrator

Drives the staged, auditable identity resolution flow:

    compute → (review) → apply → (optional) reverse

compute runs the loader and waterfall matcher and records one run plus every
candidate it produced. apply materializes accepted candidates as graph edges.
reverse soft-deactivates what apply produced. Nothing is ever deleted, so a
reversed run can be applied again to rebuild the identical edge set.
"""

from __future__ import annotations

import time

import structlog

from identigraph.config import Settings, get_settings
from identigraph.db.rls import org_scope
from identigraph.kernel.time import Clock, elapsed_ms, utc_now

from .errors import InvalidCandidateSelection, InvalidRunState, NodeCreationFailure, RunNotFound
from .loader import SourceRecordLoader
from .materializer import GraphEdgeMaterializer
from .matcher import run_waterfall
from .repository import PostgresIdentityStore
from .store import IdentityStore
from .types import (
    ApplySummary,
    CandidateStatus,
    MatchCandidate,
    PersistedCandidate,
    ResolutionRun,
    ResolveAllSummary,
    ReverseSummary,
    RunStatus,
    RunSummary,
)

logger = structlog.get_logger()

REVERSIBLE_STATUSES = (RunStatus.APPLIED, RunStatus.PARTIALLY_APPLIED)


class ResolutionOrchestrator:
    """Entry point for compute, apply, reverse and run/candidate review."""

    def __init__(
        self,
        store: IdentityStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        self.loader = SourceRecordLoader(store, self.settings.identity_sources)
        self.materializer = GraphEdgeMaterializer(store, clock)

    # ---------------------------------------------------------------------
    # Step 1: compute
    # ---------------------------------------------------------------------

    async def compute(self, org_id: str, actor: str | None = None) -> RunSummary:
        """Run the waterfall over all sources and store the candidates for review."""
        with org_scope(org_id):
            started = time.perf_counter()

            loaded = await self.loader.load(org_id)
            unique_emails = len({r.email for r in loaded.records if r.email})
            waterfall = run_waterfall(
                loaded.records,
                common_name_threshold=self.settings.identity_common_name_threshold,
            )
            duration_ms = elapsed_ms(started, time.perf_counter())

            stats = {
                "total_records_scanned": len(loaded.records),
                "unique_emails": unique_emails,
                "total_candidates": len(waterfall.candidates),
                "by_tier": {str(t.tier): t.count for t in waterfall.by_tier},
                "needs_review": waterfall.needs_review_count,
                "duration_ms": duration_ms,
                "sources": loaded.source_counts,
            }
            run = await self.store.create_run(
                org_id, stats=stats, computed_at=self.clock(), created_by=actor
            )
            await self._insert_candidates(org_id, run.id, waterfall.candidates)

        logger.info(
            "Identity resolution computed",
            org_id=org_id,
            run_id=run.id,
            records=len(loaded.records),
            candidates=len(waterfall.candidates),
            needs_review=waterfall.needs_review_count,
            duration_ms=duration_ms,
        )
        return RunSummary(
            run_id=run.id,
            total_records_scanned=len(loaded.records),
            unique_emails=unique_emails,
            total_candidates=len(waterfall.candidates),
            by_tier=waterfall.by_tier,
            needs_review_count=waterfall.needs_review_count,
            duration_ms=duration_ms,
            sources=loaded.source_counts,
        )

    async def _insert_candidates(
        self, org_id: str, run_id: str, candidates: list[MatchCandidate]
    ) -> int:
        """Insert in bounded chunks; a failed chunk is logged and skipped."""
        batch_size = self.settings.identity_candidate_batch_size
        inserted = 0
        for start in range(0, len(candidates), batch_size):
            chunk = candidates[start:start + batch_size]
            try:
                inserted += await self.store.insert_candidates(org_id, run_id, chunk)
            except Exception as e:
                logger.error(
                    "Error inserting match candidates batch",
                    run_id=run_id,
                    offset=start,
                    size=len(chunk),
                    error=str(e),
                )
        if inserted < len(candidates):
            logger.warning(
                "Some match candidates were not stored",
                run_id=run_id,
                stored=inserted,
                total=len(candidates),
            )
        return inserted

    # ---------------------------------------------------------------------
    # Step 2: apply
    # ---------------------------------------------------------------------

    async def apply(
        self,
        org_id: str,
        run_id: str,
        actor: str | None = None,
        accepted_ids: list[str] | None = None,
        rejected_ids: list[str] | None = None,
        *,
        strict: bool = False,
    ) -> ApplySummary:
        """
        Materialize accepted candidates of a run as graph edges.

        Args:
            accepted_ids: Only these candidates are applied. When None, every
                non-rejected candidate of the run is applied.
            rejected_ids: Marked rejected before anything is applied.
            strict: Raise InvalidCandidateSelection for accepted ids that are
                not part of the run instead of ignoring them.

        Raises:
            RunNotFound: the run does not exist for this org
        """
        log = logger.bind(org_id=org_id, run_id=run_id)
        with org_scope(org_id):
            await self.get_run(org_id, run_id)

            if rejected_ids:
                await self.store.set_candidate_status(
                    org_id, run_id, rejected_ids, CandidateStatus.REJECTED
                )

            candidates = await self._select_for_apply(org_id, run_id, accepted_ids, strict=strict)

            started = time.perf_counter()
            summary = ApplySummary()
            for candidate in candidates:
                await self._apply_candidate(org_id, run_id, candidate, actor, summary)

            remaining = await self.store.count_candidates(
                org_id, run_id, exclude_status=CandidateStatus.ACCEPTED
            )
            status = RunStatus.APPLIED if remaining == 0 else RunStatus.PARTIALLY_APPLIED
            await self.store.update_run_status(org_id, run_id, status, at=self.clock())

        log_method = log.warning if summary.errors else log.info
        log_method(
            "Identity resolution applied",
            status=status.value,
            duration_ms=elapsed_ms(started, time.perf_counter()),
            **summary.model_dump(),
        )
        return summary

    async def _select_for_apply(
        self,
        org_id: str,
        run_id: str,
        accepted_ids: list[str] | None,
        *,
        strict: bool,
    ) -> list[PersistedCandidate]:
        if accepted_ids is None:
            return await self.store.list_candidates(
                org_id,
                run_id,
                statuses=[CandidateStatus.PENDING, CandidateStatus.ACCEPTED],
            )

        if not accepted_ids:
            return []
        candidates = await self.store.list_candidates(org_id, run_id, ids=accepted_ids)
        unknown = sorted(set(accepted_ids) - {c.id for c in candidates})
        if unknown:
            if strict:
                raise InvalidCandidateSelection(run_id, unknown)
            logger.debug("Ignoring unknown candidate ids", run_id=run_id, unknown=unknown)
        return candidates

    async def _apply_candidate(
        self,
        org_id: str,
        run_id: str,
        candidate: PersistedCandidate,
        actor: str | None,
        summary: ApplySummary,
    ) -> None:
        node_a = await self._ensure_node(
            org_id, candidate.source_a_type, candidate.source_a_id, candidate.source_a_label, actor
        )
        if node_a:
            summary.graph_nodes_synced += 1
        node_b = await self._ensure_node(
            org_id, candidate.source_b_type, candidate.source_b_id, candidate.source_b_label, actor
        )
        if node_b:
            summary.graph_nodes_synced += 1
        if not node_a or not node_b:
            summary.errors += 1
            return

        try:
            outcome = await self.materializer.materialize_edge(
                org_id, run_id, candidate, node_a, node_b, actor
            )
            await self.store.accept_candidate(org_id, candidate.id, outcome.edge_id)
        except Exception as e:
            logger.error(
                "Error applying match candidate",
                run_id=run_id,
                candidate_id=candidate.id,
                error=str(e),
            )
            summary.errors += 1
            return

        if outcome.state == "created":
            summary.edges_created += 1
        else:
            summary.edges_existing += 1

        if await self.materializer.link_identities(org_id, candidate, actor):
            summary.identity_links_created += 1

    async def _ensure_node(
        self,
        org_id: str,
        entity_type: str,
        entity_id: str,
        label: str,
        actor: str | None,
    ) -> str | None:
        try:
            return await self.materializer.ensure_graph_node(
                org_id, entity_type, entity_id, label, actor
            )
        except NodeCreationFailure as e:
            logger.warning("Graph node upsert failed", error=e.message, **e.meta)
            return None

    # ---------------------------------------------------------------------
    # Step 3: reverse
    # ---------------------------------------------------------------------

    async def reverse(self, org_id: str, run_id: str) -> ReverseSummary:
        """
        Undo an applied run: soft-deactivate its edges and links and return its
        accepted candidates to pending.

        Edges are shared across runs. An edge this run only reused (counted as
        `edges_existing` at apply time) is closed too, even though an earlier
        run that is still `applied` created it.

        A candidate whose edge or link could not be deactivated stays
        `accepted` with its edge reference and the run keeps its status, so a
        retried reverse can finish the job.

        Raises:
            RunNotFound: the run does not exist for this org
            InvalidRunState: the run is not applied or partially applied
        """
        with org_scope(org_id):
            run = await self.get_run(org_id, run_id)
            if run.status not in REVERSIBLE_STATUSES:
                raise InvalidRunState(
                    run_id, run.status.value, expected=[s.value for s in REVERSIBLE_STATUSES]
                )

            summary = ReverseSummary()
            failed: list[str] = []
            accepted = await self.store.list_candidates(
                org_id, run_id, statuses=[CandidateStatus.ACCEPTED]
            )
            for candidate in accepted:
                if not candidate.graph_edge_id:
                    continue
                try:
                    if await self.materializer.deactivate_edge(org_id, candidate.graph_edge_id):
                        summary.edges_deactivated += 1
                    if await self.materializer.unlink_identities(org_id, candidate):
                        summary.links_deactivated += 1
                except Exception as e:
                    logger.error(
                        "Error reversing match candidate",
                        run_id=run_id,
                        candidate_id=candidate.id,
                        error=str(e),
                    )
                    failed.append(candidate.id)
            summary.errors = len(failed)

            await self.store.reset_accepted_candidates(org_id, run_id, exclude_ids=failed)
            if not failed:
                await self.store.update_run_status(
                    org_id, run_id, RunStatus.REVERSED, at=self.clock()
                )

        if failed:
            logger.warning(
                "Identity resolution partially reversed",
                org_id=org_id,
                run_id=run_id,
                status=run.status.value,
                **summary.model_dump(),
            )
        else:
            logger.info(
                "Identity resolution reversed", org_id=org_id, run_id=run_id, **summary.model_dump()
            )
        return summary

    # ---------------------------------------------------------------------
    # Review helpers
    # ---------------------------------------------------------------------

    async def reject(self, org_id: str, run_id: str, candidate_ids: list[str]) -> int:
        """Mark candidates of a run rejected so a default apply skips them."""
        with org_scope(org_id):
            await self.get_run(org_id, run_id)
            if not candidate_ids:
                return 0
            return await self.store.set_candidate_status(
                org_id, run_id, candidate_ids, CandidateStatus.REJECTED
            )

    async def get_run(self, org_id: str, run_id: str) -> ResolutionRun:
        run = await self.store.get_run(org_id, run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def list_runs(
        self, org_id: str, status: RunStatus | None = None, limit: int = 5
    ) -> list[ResolutionRun]:
        with org_scope(org_id):
            return await self.store.list_runs(org_id, status=status, limit=limit)

    async def latest_pending_run(self, org_id: str) -> ResolutionRun | None:
        runs = await self.list_runs(org_id, status=RunStatus.PENDING_REVIEW, limit=1)
        return runs[0] if runs else None

    async def list_candidates(
        self, org_id: str, run_id: str, limit: int | None = None
    ) -> list[PersistedCandidate]:
        """Candidates of a run for review, strongest tiers first."""
        with org_scope(org_id):
            await self.get_run(org_id, run_id)
            return await self.store.list_candidates(
                org_id,
                run_id,
                limit=limit or self.settings.identity_candidate_list_limit,
            )

    # ---------------------------------------------------------------------
    # One-shot
    # ---------------------------------------------------------------------

    async def resolve_all(self, org_id: str, actor: str | None = None) -> ResolveAllSummary:
        """Compute and apply every candidate without review."""
        run = await self.compute(org_id, actor)
        applied = await self.apply(org_id, run.run_id, actor)
        return ResolveAllSummary(run=run, apply=applied)


# =============================================================================
# Factory
# =============================================================================

_orchestrator: ResolutionOrchestrator | None = None


def get_resolution_orchestrator() -> ResolutionOrchestrator:
    """Get or create the global orchestrator backed by Postgres."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ResolutionOrchestrator(PostgresIdentityStore())
    return _orchestrator

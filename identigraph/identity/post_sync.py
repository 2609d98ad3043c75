"""
Post-sync auto-resolution.

Called after a source sync finishes: computes a fresh run and applies only the
high-confidence candidates (email and phone tiers by default). Everything
below the threshold stays pending for human review.
"""

from __future__ import annotations

import structlog

from .orchestrator import ResolutionOrchestrator, get_resolution_orchestrator
from .types import CandidateStatus, PostSyncSummary

logger = structlog.get_logger()


async def run_post_sync_resolution(
    org_id: str,
    actor: str | None = None,
    *,
    orchestrator: ResolutionOrchestrator | None = None,
) -> PostSyncSummary:
    """Compute, then auto-apply candidates at or above the auto-apply confidence."""
    orchestrator = orchestrator or get_resolution_orchestrator()
    threshold = orchestrator.settings.identity_auto_apply_confidence

    run = await orchestrator.compute(org_id, actor)
    pending = await orchestrator.store.list_candidates(
        org_id, run.run_id, statuses=[CandidateStatus.PENDING]
    )
    eligible = [c.id for c in pending if c.confidence >= threshold]

    summary = PostSyncSummary(
        run_id=run.run_id,
        total_candidates=run.total_candidates,
        pending_review=len(pending) - len(eligible),
    )
    if not eligible:
        logger.info(
            "Post-sync resolution found nothing to auto-apply",
            org_id=org_id,
            run_id=run.run_id,
            pending_review=summary.pending_review,
        )
        return summary

    summary.apply = await orchestrator.apply(org_id, run.run_id, actor, accepted_ids=eligible)
    summary.auto_applied = summary.apply.edges_created + summary.apply.edges_existing

    logger.info(
        "Post-sync resolution complete",
        org_id=org_id,
        run_id=run.run_id,
        auto_applied=summary.auto_applied,
        pending_review=summary.pending_review,
        threshold=threshold,
    )
    return summary

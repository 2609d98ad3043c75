"""
Waterfall Matcher

Six deterministic matching tiers run in priority order. All tiers share one
set of already-matched pair keys, passed in explicitly, so a pair claimed by
a higher tier is never reconsidered by a lower one.

Matching tiers:
  1. Exact email match         (0.99)
  2. Phone match               (0.90)
  3. Name + company match      (0.80)
  4. Name + email domain match (0.75)
  5. Name + city match         (0.70)
  6. Name-only match           (0.50, common names flagged for review)
"""

from __future__ import annotations

from collections import Counter
from typing import Callable, Iterable

from .normalize import pair_key
from .types import IdentityRecord, MatchCandidate, TierStats, WaterfallResult

TIER_LABELS: dict[int, str] = {
    1: "Email match",
    2: "Phone match",
    3: "Name + company",
    4: "Name + email domain",
    5: "Name + city",
    6: "Name only",
}

TIER_CONFIDENCE: dict[int, float] = {
    1: 0.99,
    2: 0.90,
    3: 0.80,
    4: 0.75,
    5: 0.70,
    6: 0.50,
}

# match_type recorded on the legacy CRM ↔ e-commerce link table
TIER_MATCH_TYPES: dict[int, str] = {
    1: "email_exact",
    2: "phone_match",
    3: "name_company",
    4: "name_email_domain",
    5: "name_city",
    6: "name_only",
}

MIN_PHONE_DIGITS = 7
DEFAULT_COMMON_NAME_THRESHOLD = 3

KeyFn = Callable[[IdentityRecord], tuple[str, ...] | None]


def _ordered(records: Iterable[IdentityRecord]) -> list[IdentityRecord]:
    return sorted(records, key=lambda r: (r.source, r.id))


def _group(records: list[IdentityRecord], key_fn: KeyFn) -> dict[tuple[str, ...], list[IdentityRecord]]:
    groups: dict[tuple[str, ...], list[IdentityRecord]] = {}
    for record in _ordered(records):
        key = key_fn(record)
        if key is None:
            continue
        groups.setdefault(key, []).append(record)
    return groups


def _pair_candidates(
    groups: dict[tuple[str, ...], list[IdentityRecord]],
    matched_pairs: set[str],
    *,
    tier: int,
    signals: list[str],
    matched_on: Callable[[tuple[str, ...]], str],
    needs_review: Callable[[tuple[str, ...]], bool] = lambda _key: False,
) -> list[MatchCandidate]:
    candidates: list[MatchCandidate] = []
    for key in sorted(groups):
        group = groups[key]
        flagged = needs_review(key)
        for i in range(len(group)):
            for j in range(i + 1, len(group)):
                a, b = group[i], group[j]
                if a.source == b.source:
                    continue
                pk = pair_key(a.key, b.key)
                if pk in matched_pairs:
                    continue
                matched_pairs.add(pk)
                candidates.append(
                    MatchCandidate(
                        record_a=a,
                        record_b=b,
                        tier=tier,
                        confidence=TIER_CONFIDENCE[tier],
                        signals=list(signals),
                        matched_on=matched_on(key),
                        needs_review=flagged,
                    )
                )
    return candidates


def _name_key(record: IdentityRecord, *extra: str) -> tuple[str, ...] | None:
    if not record.first_name or not record.last_name or not all(extra):
        return None
    return (record.first_name, record.last_name, *extra)


def _joined(key: tuple[str, ...]) -> str:
    return " + ".join(key)


def match_by_email(records: list[IdentityRecord], matched_pairs: set[str]) -> list[MatchCandidate]:
    """Tier 1: exact email match."""
    groups = _group(records, lambda r: (r.email,) if r.email else None)
    return _pair_candidates(
        groups, matched_pairs, tier=1, signals=["email"], matched_on=lambda k: k[0]
    )


def match_by_phone(records: list[IdentityRecord], matched_pairs: set[str]) -> list[MatchCandidate]:
    """Tier 2: normalized phone match."""
    groups = _group(
        records, lambda r: (r.phone,) if len(r.phone) >= MIN_PHONE_DIGITS else None
    )
    return _pair_candidates(
        groups, matched_pairs, tier=2, signals=["phone"], matched_on=lambda k: k[0]
    )


def match_by_name_company(records: list[IdentityRecord], matched_pairs: set[str]) -> list[MatchCandidate]:
    """Tier 3: first + last name + company."""
    groups = _group(records, lambda r: _name_key(r, r.company))
    return _pair_candidates(
        groups,
        matched_pairs,
        tier=3,
        signals=["first_name", "last_name", "company"],
        matched_on=_joined,
    )


def match_by_name_email_domain(records: list[IdentityRecord], matched_pairs: set[str]) -> list[MatchCandidate]:
    """Tier 4: first + last name + email domain."""
    groups = _group(records, lambda r: _name_key(r, r.email_domain))
    return _pair_candidates(
        groups,
        matched_pairs,
        tier=4,
        signals=["first_name", "last_name", "email_domain"],
        matched_on=_joined,
    )


def match_by_name_city(records: list[IdentityRecord], matched_pairs: set[str]) -> list[MatchCandidate]:
    """Tier 5: first + last name + city."""
    groups = _group(records, lambda r: _name_key(r, r.city))
    return _pair_candidates(
        groups,
        matched_pairs,
        tier=5,
        signals=["first_name", "last_name", "city"],
        matched_on=_joined,
    )


def match_by_name_only(
    records: list[IdentityRecord],
    matched_pairs: set[str],
    *,
    common_name_threshold: int = DEFAULT_COMMON_NAME_THRESHOLD,
) -> list[MatchCandidate]:
    """Tier 6: first + last name only.

    A name key occurring `common_name_threshold` or more times across all
    records is treated as a common name and its candidates need review.
    """
    groups = _group(records, _name_key)
    name_counts = Counter({key: len(group) for key, group in groups.items()})
    return _pair_candidates(
        groups,
        matched_pairs,
        tier=6,
        signals=["first_name", "last_name"],
        matched_on=lambda k: " ".join(k),
        needs_review=lambda k: name_counts[k] >= common_name_threshold,
    )


def tier_stats(candidates: list[MatchCandidate]) -> list[TierStats]:
    """Per-tier counts for tiers that produced at least one candidate."""
    counts = Counter(c.tier for c in candidates)
    review = Counter(c.tier for c in candidates if c.needs_review)
    return [
        TierStats(
            tier=tier,
            label=TIER_LABELS[tier],
            count=counts[tier],
            needs_review=review[tier],
        )
        for tier in sorted(counts)
    ]


def run_waterfall(
    records: list[IdentityRecord],
    *,
    common_name_threshold: int = DEFAULT_COMMON_NAME_THRESHOLD,
) -> WaterfallResult:
    """Run all six tiers in priority order over `records`."""
    matched_pairs: set[str] = set()
    candidates: list[MatchCandidate] = []
    candidates.extend(match_by_email(records, matched_pairs))
    candidates.extend(match_by_phone(records, matched_pairs))
    candidates.extend(match_by_name_company(records, matched_pairs))
    candidates.extend(match_by_name_email_domain(records, matched_pairs))
    candidates.extend(match_by_name_city(records, matched_pairs))
    candidates.extend(
        match_by_name_only(records, matched_pairs, common_name_threshold=common_name_threshold)
    )
    return WaterfallResult(candidates=candidates, by_tier=tier_stats(candidates))

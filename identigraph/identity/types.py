"""
Identity Resolution Type Definitions

Records, candidates, runs and graph artifacts shared by the loader, matcher,
orchestrator, materializer and presentation merge.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SAME_PERSON = "same_person"

CRM_CONTACTS = "crm_contacts"
ECOM_CUSTOMERS = "ecom_customers"
KLAVIYO_PROFILES = "klaviyo_profiles"


class RunStatus(str, Enum):
    """Lifecycle of one resolution run."""

    PENDING_REVIEW = "pending_review"
    APPLIED = "applied"
    PARTIALLY_APPLIED = "partially_applied"
    REVERSED = "reversed"


class CandidateStatus(str, Enum):
    """Review state of a persisted match candidate."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class IdentityRecord(BaseModel):
    """A record from any source with all matchable fields normalized."""

    model_config = ConfigDict(frozen=True)

    source: str  # entity type, e.g. "crm_contacts"
    id: str
    email: str = ""
    email_domain: str = ""
    phone: str = ""  # digits only, last 10
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    city: str = ""
    label: str
    sublabel: str | None = None

    @property
    def key(self) -> str:
        return f"{self.source}:{self.id}"


class MatchCandidate(BaseModel):
    """A proposed cross-source pair produced by one waterfall tier."""

    model_config = ConfigDict(frozen=True)

    record_a: IdentityRecord
    record_b: IdentityRecord
    tier: int = Field(ge=1, le=6)
    confidence: float
    signals: list[str]
    matched_on: str
    needs_review: bool = False


class TierStats(BaseModel):
    """Per-tier aggregate for reporting."""

    tier: int
    label: str
    count: int
    needs_review: int


class LoadResult(BaseModel):
    """Normalized records plus per-source row counts."""

    records: list[IdentityRecord] = Field(default_factory=list)
    source_counts: dict[str, int] = Field(default_factory=dict)


class WaterfallResult(BaseModel):
    """Candidates from all tiers in tier order, with per-tier stats."""

    candidates: list[MatchCandidate] = Field(default_factory=list)
    by_tier: list[TierStats] = Field(default_factory=list)

    @property
    def needs_review_count(self) -> int:
        return sum(1 for c in self.candidates if c.needs_review)


class ResolutionRun(BaseModel):
    """One execution of compute; the audit unit for a batch of candidates."""

    id: str
    org_id: str
    status: RunStatus
    computed_at: datetime
    applied_at: datetime | None = None
    reversed_at: datetime | None = None
    stats: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None


class PersistedCandidate(BaseModel):
    """Durable form of a match candidate within a run."""

    id: str
    run_id: str
    org_id: str
    source_a_type: str
    source_a_id: str
    source_a_label: str
    source_b_type: str
    source_b_id: str
    source_b_label: str
    match_tier: int
    confidence: float
    match_signals: list[str] = Field(default_factory=list)
    matched_on: str | None = None
    needs_review: bool = False
    status: CandidateStatus = CandidateStatus.PENDING
    graph_edge_id: str | None = None


class GraphNode(BaseModel):
    """Anchor for one (entity_type, entity_id) record in the identity graph."""

    id: str
    org_id: str
    entity_type: str
    entity_id: str
    label: str = ""
    sublabel: str | None = None


class GraphEdge(BaseModel):
    """A typed, temporal relationship between two graph nodes."""

    id: str | None = None
    org_id: str
    source_node_id: str
    target_node_id: str
    relation_type: str = SAME_PERSON
    weight: float = 1.0
    confidence: float = 1.0
    properties: dict[str, Any] = Field(default_factory=dict)
    source: str = "system"
    valid_from: datetime
    valid_until: datetime | None = None
    created_by: str | None = None

    @property
    def is_active(self) -> bool:
        return self.valid_until is None


class IdentityLink(BaseModel):
    """Pairwise CRM contact ↔ e-commerce customer link."""

    org_id: str
    crm_contact_id: str
    ecom_customer_id: str
    match_type: str = "email_exact"
    confidence: float = 1.0
    matched_on: str | None = None
    is_active: bool = True
    linked_by: str | None = None


class RunSummary(BaseModel):
    """Result of compute (before apply)."""

    run_id: str
    total_records_scanned: int
    unique_emails: int
    total_candidates: int
    by_tier: list[TierStats] = Field(default_factory=list)
    needs_review_count: int = 0
    duration_ms: int = 0
    sources: dict[str, int] = Field(default_factory=dict)


class ApplySummary(BaseModel):
    """Aggregate counts of one apply call."""

    edges_created: int = 0
    edges_existing: int = 0
    identity_links_created: int = 0
    graph_nodes_synced: int = 0
    errors: int = 0


class ReverseSummary(BaseModel):
    edges_deactivated: int = 0
    links_deactivated: int = 0
    errors: int = 0


class PostSyncSummary(BaseModel):
    """Outcome of compute plus high-confidence auto-apply after a sync."""

    run_id: str
    total_candidates: int = 0
    auto_applied: int = 0
    pending_review: int = 0
    apply: ApplySummary | None = None


class ResolveAllSummary(BaseModel):
    """One-shot compute + apply-everything result."""

    run: RunSummary
    apply: ApplySummary


class IdentitySummary(BaseModel):
    """Read-only counts for reporting components."""

    total_unified_people: int
    cross_source_linked: int
    sources_active: list[str] = Field(default_factory=list)
    source_counts: dict[str, int] = Field(default_factory=dict)


class PersonRow(BaseModel):
    """A displayed person row; merged rows list every contributing source."""

    id: str
    source: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    title: str | None = None
    city: str | None = None
    status: str | None = None
    orders_count: int | None = None
    total_spent: float | None = None
    avg_order_value: float | None = None
    last_order_at: datetime | None = None
    sources: list[str] = Field(default_factory=list)
    is_multi_source: bool = False

    @property
    def entity_key(self) -> str:
        return f"{self.source}:{self.id}"

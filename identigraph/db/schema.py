"""
Identity Resolution Schema

DDL for the tables the resolution engine owns, plus startup validation.
Per-source record tables (crm_contacts, ecom_customers, klaviyo_profiles)
belong to the surrounding application and are only read.
"""

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

SCHEMA_STATEMENTS: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS graph_nodes (
        id           TEXT PRIMARY KEY,
        org_id       TEXT NOT NULL,
        entity_type  TEXT NOT NULL,
        entity_id    TEXT NOT NULL,
        label        TEXT NOT NULL,
        sublabel     TEXT,
        properties   JSONB NOT NULL DEFAULT '{}',
        is_active    BOOLEAN NOT NULL DEFAULT true,
        created_by   TEXT,
        created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (org_id, entity_type, entity_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS graph_edges (
        id              TEXT PRIMARY KEY,
        org_id          TEXT NOT NULL,
        source_node_id  TEXT NOT NULL REFERENCES graph_nodes(id),
        target_node_id  TEXT NOT NULL REFERENCES graph_nodes(id),
        relation_type   TEXT NOT NULL,
        weight          DOUBLE PRECISION NOT NULL DEFAULT 1.0,
        confidence      DOUBLE PRECISION NOT NULL DEFAULT 1.0,
        properties      JSONB NOT NULL DEFAULT '{}',
        source          TEXT NOT NULL DEFAULT 'system',
        valid_from      TIMESTAMPTZ NOT NULL DEFAULT now(),
        valid_until     TIMESTAMPTZ,
        created_by      TEXT,
        created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    # At most one active edge per unordered node pair and relation type.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_graph_edges_active_pair
        ON graph_edges (
            org_id,
            LEAST(source_node_id, target_node_id),
            GREATEST(source_node_id, target_node_id),
            relation_type
        )
        WHERE valid_until IS NULL
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_graph_edges_active
        ON graph_edges (org_id, relation_type) WHERE valid_until IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS identity_resolution_runs (
        id           TEXT PRIMARY KEY,
        org_id       TEXT NOT NULL,
        status       TEXT NOT NULL DEFAULT 'pending_review'
                     CHECK (status IN ('pending_review', 'applied', 'partially_applied', 'reversed')),
        computed_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
        applied_at   TIMESTAMPTZ,
        reversed_at  TIMESTAMPTZ,
        stats        JSONB NOT NULL DEFAULT '{}',
        created_by   TEXT,
        created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_resolution_runs_status
        ON identity_resolution_runs (org_id, status)
    """,
    """
    CREATE TABLE IF NOT EXISTS identity_match_candidates (
        id              TEXT PRIMARY KEY,
        run_id          TEXT NOT NULL REFERENCES identity_resolution_runs(id),
        org_id          TEXT NOT NULL,
        source_a_type   TEXT NOT NULL,
        source_a_id     TEXT NOT NULL,
        source_a_label  TEXT NOT NULL,
        source_b_type   TEXT NOT NULL,
        source_b_id     TEXT NOT NULL,
        source_b_label  TEXT NOT NULL,
        match_tier      INT NOT NULL CHECK (match_tier BETWEEN 1 AND 6),
        confidence      DOUBLE PRECISION NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
        match_signals   TEXT[] NOT NULL DEFAULT '{}',
        matched_on      TEXT,
        needs_review    BOOLEAN NOT NULL DEFAULT false,
        status          TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'accepted', 'rejected')),
        graph_edge_id   TEXT REFERENCES graph_edges(id),
        created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_match_candidates_status
        ON identity_match_candidates (run_id, status)
    """,
    """
    CREATE TABLE IF NOT EXISTS customer_identity_links (
        id                TEXT PRIMARY KEY,
        org_id            TEXT NOT NULL,
        crm_contact_id    TEXT NOT NULL,
        ecom_customer_id  TEXT NOT NULL,
        match_type        TEXT NOT NULL DEFAULT 'email_exact'
                          CHECK (match_type IN ('email_exact', 'phone_match', 'name_company',
                                                'name_email_domain', 'name_city', 'name_only', 'manual')),
        confidence        NUMERIC(3,2) NOT NULL DEFAULT 1.0,
        matched_on        TEXT,
        is_active         BOOLEAN NOT NULL DEFAULT true,
        linked_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
        linked_by         TEXT,
        UNIQUE (org_id, crm_contact_id, ecom_customer_id)
    )
    """,
]

# All tables required by the resolution engine
REQUIRED_TABLES = [
    "graph_nodes",
    "graph_edges",
    "identity_resolution_runs",
    "identity_match_candidates",
    "customer_identity_links",
]


async def create_schema(session: AsyncSession) -> None:
    """Create the engine's tables and indexes if they do not exist."""
    for statement in SCHEMA_STATEMENTS:
        await session.execute(text(statement))
    logger.info("Identity schema ensured", statements=len(SCHEMA_STATEMENTS))


async def validate_schema(session: AsyncSession) -> tuple[bool, list[str]]:
    """
    Validate that all required tables exist.

    Returns:
        Tuple of (is_valid, missing_items)
    """
    missing: list[str] = []

    for table in REQUIRED_TABLES:
        result = await session.execute(
            text("""
                SELECT 1 FROM information_schema.tables
                WHERE table_schema = 'public' AND table_name = :table
            """),
            {"table": table},
        )
        if not result.fetchone():
            missing.append(f"table:{table}")

    is_valid = len(missing) == 0

    if not is_valid:
        logger.error(
            "Schema validation failed",
            missing_count=len(missing),
            missing_items=missing,
        )
    else:
        logger.info("Schema validation passed", table_count=len(REQUIRED_TABLES))

    return is_valid, missing


async def ensure_schema_or_fail(session: AsyncSession) -> None:
    """
    Validate schema and raise if invalid.

    Raises:
        RuntimeError: If schema validation fails
    """
    is_valid, missing = await validate_schema(session)

    if not is_valid:
        raise RuntimeError(
            "Database schema validation failed. "
            f"Missing: {', '.join(missing)}. "
            "Run `scripts/identity_resolution.py init-schema` to create them."
        )

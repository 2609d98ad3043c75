"""
Identity Source Definitions

Each source describes how to read person-like rows from one table and how to
turn a row into a normalized IdentityRecord. The SQL fragments are consumed by
the Postgres store; the extractors are pure and used by the loader.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .normalize import display_label, email_domain, norm, normalize_phone
from .types import CRM_CONTACTS, ECOM_CUSTOMERS, KLAVIYO_PROFILES, IdentityRecord

Row = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class SourceDefinition:
    entity_type: str
    table: str
    select_sql: str
    from_sql: str
    org_column: str
    email_column: str
    phone_column: str
    extract: Callable[[Row], dict[str, Any]]

    def build_record(self, row: Row) -> IdentityRecord:
        fields = self.extract(row)
        return IdentityRecord(
            source=self.entity_type,
            id=str(row["id"]),
            email_domain=email_domain(fields["email"]),
            **fields,
        )


def _extract_crm_contact(row: Row) -> dict[str, Any]:
    return {
        "email": norm(row.get("email")),
        "phone": normalize_phone(row.get("phone")),
        "first_name": norm(row.get("first_name")),
        "last_name": norm(row.get("last_name")),
        "company": norm(row.get("company_name")),
        "city": "",
        "label": display_label(
            row.get("first_name"), row.get("last_name"), row.get("email"), "Unknown Contact"
        ),
        "sublabel": row.get("title") or row.get("status") or None,
    }


def _extract_ecom_customer(row: Row) -> dict[str, Any]:
    spent = f"${row['total_spent']}" if row.get("total_spent") else ""
    orders = f"{row['orders_count']} orders" if row.get("orders_count") else ""
    return {
        "email": norm(row.get("email")),
        "phone": normalize_phone(row.get("phone")),
        "first_name": norm(row.get("first_name")),
        "last_name": norm(row.get("last_name")),
        "company": "",
        "city": norm(row.get("city")),
        "label": display_label(
            row.get("first_name"), row.get("last_name"), row.get("email"), "Unknown Customer"
        ),
        "sublabel": " · ".join(part for part in (spent, orders) if part) or None,
    }


def _extract_klaviyo_profile(row: Row) -> dict[str, Any]:
    return {
        "email": norm(row.get("email")),
        "phone": normalize_phone(row.get("phone_number")),
        "first_name": norm(row.get("first_name")),
        "last_name": norm(row.get("last_name")),
        "company": norm(row.get("organization")),
        "city": norm(row.get("city")),
        "label": display_label(
            row.get("first_name"), row.get("last_name"), row.get("email"), "Unknown Subscriber"
        ),
        "sublabel": row.get("organization") or "Klaviyo subscriber",
    }


IDENTITY_SOURCES: dict[str, SourceDefinition] = {
    CRM_CONTACTS: SourceDefinition(
        entity_type=CRM_CONTACTS,
        table="crm_contacts",
        select_sql=(
            "c.id, c.email, c.phone, c.first_name, c.last_name, "
            "c.title, c.status, co.name AS company_name"
        ),
        from_sql="crm_contacts c LEFT JOIN crm_companies co ON co.id = c.company_id",
        org_column="c.org_id",
        email_column="c.email",
        phone_column="c.phone",
        extract=_extract_crm_contact,
    ),
    ECOM_CUSTOMERS: SourceDefinition(
        entity_type=ECOM_CUSTOMERS,
        table="ecom_customers",
        select_sql=(
            "e.id, e.email, e.phone, e.first_name, e.last_name, "
            "e.total_spent, e.orders_count, e.default_address->>'city' AS city"
        ),
        from_sql="ecom_customers e",
        org_column="e.org_id",
        email_column="e.email",
        phone_column="e.phone",
        extract=_extract_ecom_customer,
    ),
    KLAVIYO_PROFILES: SourceDefinition(
        entity_type=KLAVIYO_PROFILES,
        table="klaviyo_profiles",
        select_sql=(
            "k.id, k.email, k.phone_number, k.first_name, k.last_name, "
            "k.organization, k.title, k.city"
        ),
        from_sql="klaviyo_profiles k",
        org_column="k.org_id",
        email_column="k.email",
        phone_column="k.phone_number",
        extract=_extract_klaviyo_profile,
    ),
}


def configured_sources(names: list[str]) -> list[SourceDefinition]:
    """Source definitions for `names` in the given order; unknown names are dropped."""
    return [IDENTITY_SOURCES[name] for name in names if name in IDENTITY_SOURCES]

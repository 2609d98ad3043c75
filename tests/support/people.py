"""Row and record builders for identity tests."""

from __future__ import annotations

from typing import Any

from identigraph.identity.normalize import email_domain, norm, normalize_phone
from identigraph.identity.types import IdentityRecord


def crm_row(id: str, *, email=None, phone=None, first=None, last=None, company=None, **extra) -> dict[str, Any]:
    return {
        "id": id,
        "email": email,
        "phone": phone,
        "first_name": first,
        "last_name": last,
        "company_name": company,
        "title": extra.pop("title", None),
        "status": extra.pop("status", None),
        **extra,
    }


def ecom_row(id: str, *, email=None, phone=None, first=None, last=None, city=None, **extra) -> dict[str, Any]:
    return {
        "id": id,
        "email": email,
        "phone": phone,
        "first_name": first,
        "last_name": last,
        "city": city,
        "total_spent": extra.pop("total_spent", None),
        "orders_count": extra.pop("orders_count", None),
        **extra,
    }


def klaviyo_row(
    id: str, *, email=None, phone=None, first=None, last=None, organization=None, city=None, **extra
) -> dict[str, Any]:
    return {
        "id": id,
        "email": email,
        "phone_number": phone,
        "first_name": first,
        "last_name": last,
        "organization": organization,
        "city": city,
        "title": extra.pop("title", None),
        **extra,
    }


def record(
    source: str,
    id: str,
    *,
    email: str = "",
    phone: str = "",
    first: str = "",
    last: str = "",
    company: str = "",
    city: str = "",
) -> IdentityRecord:
    """Normalized record as the loader would produce it."""
    email = norm(email)
    return IdentityRecord(
        source=source,
        id=id,
        email=email,
        email_domain=email_domain(email),
        phone=normalize_phone(phone),
        first_name=norm(first),
        last_name=norm(last),
        company=norm(company),
        city=norm(city),
        label=f"{first} {last}".strip() or email or id,
    )

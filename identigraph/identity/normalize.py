"""Normalization helpers for matchable identity fields."""

from __future__ import annotations

import re
from typing import Any

_NON_DIGIT = re.compile(r"\D")


def norm(value: Any) -> str:
    """Lower-case and trim; None and non-strings become ''."""
    if value is None:
        return ""
    return str(value).lower().strip()


def normalize_phone(raw: Any) -> str:
    """Digits only, keeping the last 10 so country codes (+1, +44) drop out."""
    if not raw:
        return ""
    digits = _NON_DIGIT.sub("", str(raw))
    return digits[-10:] if len(digits) >= 10 else digits


def email_domain(email: str) -> str:
    at = email.find("@")
    return email[at + 1:] if at >= 0 else ""


def pair_key(key_a: str, key_b: str) -> str:
    """Order-independent key for a pair of `source:id` record keys."""
    return f"{key_a}::{key_b}" if key_a < key_b else f"{key_b}::{key_a}"


def display_label(first_name: Any, last_name: Any, email: Any, fallback: str) -> str:
    """`"First Last"`, else the raw email, else `fallback`."""
    full = f"{first_name or ''} {last_name or ''}".strip()
    return full or (str(email) if email else "") or fallback

from __future__ import annotations

import pytest

from identigraph.identity.normalize import display_label, email_domain, norm, normalize_phone, pair_key


@pytest.mark.unit
def test_norm_lowercases_and_trims():
    assert norm("  Jane@Example.COM ") == "jane@example.com"
    assert norm(None) == ""


@pytest.mark.unit
@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("+1 (415) 555-0100", "4155550100"),
        ("+44 20 7946 0958", "2079460958"),
        ("555-0100", "5550100"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_phone_keeps_last_ten_digits(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.unit
def test_email_domain():
    assert email_domain("jane@acme.com") == "acme.com"
    assert email_domain("not-an-email") == ""


@pytest.mark.unit
def test_pair_key_is_order_independent():
    assert pair_key("crm_contacts:1", "ecom_customers:2") == pair_key("ecom_customers:2", "crm_contacts:1")


@pytest.mark.unit
def test_display_label_fallbacks():
    assert display_label("Jane", "Doe", "jane@acme.com", "Unknown") == "Jane Doe"
    assert display_label(None, None, "jane@acme.com", "Unknown") == "jane@acme.com"
    assert display_label(None, None, None, "Unknown Contact") == "Unknown Contact"

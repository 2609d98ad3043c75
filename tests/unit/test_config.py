from __future__ import annotations

import pytest
from pydantic import ValidationError

from identigraph.config import Settings


@pytest.mark.unit
def test_identity_defaults():
    settings = Settings(_env_file=None)
    assert settings.identity_sources == ["crm_contacts", "ecom_customers", "klaviyo_profiles"]
    assert settings.identity_source_priority[0] == "crm_contacts"
    assert settings.identity_candidate_batch_size == 500
    assert settings.identity_auto_apply_confidence == 0.90
    assert settings.identity_common_name_threshold == 3


@pytest.mark.unit
def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("IDENTITY_AUTO_APPLY_CONFIDENCE", "0.99")
    monkeypatch.setenv("IDENTITY_SOURCES", '["crm_contacts"]')
    settings = Settings(_env_file=None)
    assert settings.identity_auto_apply_confidence == 0.99
    assert settings.identity_sources == ["crm_contacts"]


@pytest.mark.unit
def test_common_name_threshold_must_be_at_least_two():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, identity_common_name_threshold=1)

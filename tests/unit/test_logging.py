from __future__ import annotations

import json

import pytest
import structlog

from identigraph.config import Settings
from identigraph.logging import configure_logging


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.mark.unit
def test_json_logging_renders_key_values(capsys):
    configure_logging(Settings(_env_file=None, log_format="json", log_level="INFO"))
    structlog.get_logger().info("Identity resolution computed", org_id="org-1")

    line = capsys.readouterr().out.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "Identity resolution computed"
    assert payload["org_id"] == "org-1"
    assert payload["level"] == "info"


@pytest.mark.unit
def test_level_filtering(capsys):
    configure_logging(Settings(_env_file=None, log_format="json", log_level="ERROR"))
    structlog.get_logger().info("Hidden")

    assert capsys.readouterr().out == ""

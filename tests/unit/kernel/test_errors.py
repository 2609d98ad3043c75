from __future__ import annotations

import pytest

from identigraph.identity.errors import (
    EdgeInsertConflict,
    InvalidCandidateSelection,
    InvalidRunState,
    NodeCreationFailure,
    RunNotFound,
    SourceQueryError,
    SourceUnavailable,
)
from identigraph.kernel.errors import ConflictError, IdentigraphError, NotFoundError


@pytest.mark.unit
def test_error_code_must_be_dotted_lowercase():
    with pytest.raises(ValueError):
        IdentigraphError(code="Bad-Code", message="nope")


@pytest.mark.unit
def test_to_public_dict_includes_meta_and_request_id():
    err = NotFoundError(code="thing.missing", message="Thing missing", meta={"id": "t1"})
    assert err.to_public_dict(request_id="req-1") == {
        "detail": "Thing missing",
        "code": "thing.missing",
        "request_id": "req-1",
        "meta": {"id": "t1"},
    }


@pytest.mark.unit
@pytest.mark.parametrize(
    ("error", "code", "status"),
    [
        (SourceUnavailable("crm_contacts"), "identity.source_unavailable", 404),
        (SourceQueryError("crm_contacts", reason="boom"), "identity.source_query_failed", 502),
        (NodeCreationFailure("crm_contacts", "c1", reason="boom"), "identity.node_creation_failed", 502),
        (EdgeInsertConflict("n1", "n2"), "identity.edge_conflict", 409),
        (RunNotFound("run-1"), "identity.run_not_found", 404),
        (InvalidRunState("run-1", "pending_review", expected=["applied"]), "identity.invalid_run_state", 409),
        (InvalidCandidateSelection("run-1", ["x"]), "identity.invalid_candidate_selection", 422),
    ],
)
def test_identity_errors_have_stable_codes(error, code, status):
    assert isinstance(error, IdentigraphError)
    assert error.code == code
    assert error.status_code == status


@pytest.mark.unit
def test_invalid_run_state_is_a_conflict_with_context():
    err = InvalidRunState("run-1", "reversed", expected=["applied", "partially_applied"])
    assert isinstance(err, ConflictError)
    assert err.meta == {"run_id": "run-1", "status": "reversed"}
    assert "applied, partially_applied" in err.message

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from tabpilot.errors import (  # noqa: E402
    ActionError,
    AssertContext,
    ErrorKind,
    QueryContext,
    SessionContext,
    TargetContext,
    WaitContext,
    assert_failed,
    internal_error,
    query_invalid,
)


def test_error_codes_are_closed_set() -> None:
    assert {kind.value for kind in ErrorKind} == {
        "E_QUERY_INVALID",
        "E_WAIT_TIMEOUT",
        "E_ASSERT_FAILED",
        "E_INTERNAL",
        "E_TARGET_NOT_FOUND",
        "E_SESSION_NOT_FOUND",
        "E_SESSION_UNREACHABLE",
    }


def test_envelope_shape() -> None:
    err = query_invalid(
        "No element matched click query",
        hints=["a", "b"],
        reason="no_match",
        query_mode="text",
        query="Go",
        match_count=0,
    )
    payload = err.to_dict()
    assert payload["ok"] is False
    assert payload["code"] == "E_QUERY_INVALID"
    assert payload["message"] == "No element matched click query"
    assert payload["hints"] == ["a", "b"]
    assert payload["hintContext"]["reason"] == "no_match"
    assert payload["hintContext"]["matchCount"] == 0
    assert payload["hintContext"]["frameScope"] is None


def test_wrong_context_type_is_rejected() -> None:
    with pytest.raises(TypeError):
        ActionError(ErrorKind.WAIT_TIMEOUT, "x", context=QueryContext())
    with pytest.raises(TypeError):
        ActionError(ErrorKind.TARGET_NOT_FOUND, "x", context=SessionContext())


def test_default_context_matches_kind() -> None:
    err = ActionError(ErrorKind.SESSION_UNREACHABLE, "down")
    assert isinstance(err.context, SessionContext)
    assert isinstance(ActionError(ErrorKind.WAIT_TIMEOUT, "slow").context, WaitContext)


def test_message_is_single_line_and_capped() -> None:
    err = internal_error("line one\nline two " + "x" * 400, op="Runtime.evaluate")
    assert "\n" not in err.message
    assert len(err.message) <= 220
    assert err.message.startswith("line one line two")


def test_hints_are_capped_at_three() -> None:
    err = query_invalid("bad", hints=["1", "", "2", "3", "4"])
    assert err.hints == ["1", "2", "3"]


def test_assert_and_target_contexts() -> None:
    err = assert_failed("assertion failed: text", assertion_id="text", expected="Welcome", actual="Login")
    assert isinstance(err.context, AssertContext)
    assert err.to_dict()["hintContext"] == {"assertionId": "text", "expected": "Welcome", "actual": "Login"}
    target = ActionError(
        ErrorKind.TARGET_NOT_FOUND,
        "gone",
        context=TargetContext(requested_target_id="T9", sample_target_ids=("T1", "T2")),
    )
    assert target.to_dict()["hintContext"]["sampleTargetIds"] == ["T1", "T2"]
    assert target.code == "E_TARGET_NOT_FOUND"

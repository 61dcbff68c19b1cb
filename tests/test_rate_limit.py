from __future__ import annotations

import allure

from agent_batch.engine.rate_limit import classify_rate_limit

pytestmark = [
    allure.epic("Batch Engine"),
    allure.feature("Process Invocation"),
]


def test_exit_code_429_is_rate_limited_without_stderr() -> None:
    classified = classify_rate_limit(exit_code=429, stderr="")
    assert classified.is_rate_limited is True
    assert classified.matched_rule == "exit_code_429"


def test_empty_stderr_is_not_rate_limited() -> None:
    classified = classify_rate_limit(exit_code=1, stderr="")
    assert classified.is_rate_limited is False
    assert classified.matched_rule is None


def test_stderr_429_marker_is_rate_limited() -> None:
    classified = classify_rate_limit(exit_code=1, stderr="upstream answered HTTP 429")
    assert classified.is_rate_limited is True
    assert classified.matched_rule == "stderr_429"


def test_too_many_requests_matches_case_insensitively() -> None:
    classified = classify_rate_limit(exit_code=1, stderr="Error: Too Many Requests, slow down")
    assert classified.is_rate_limited is True
    assert classified.matched_rule == "too_many_requests"


def test_bad_request_with_no_available_account_is_rate_limited() -> None:
    classified = classify_rate_limit(
        exit_code=1,
        stderr="proxy error 400: No Available Account in pool",
    )
    assert classified.is_rate_limited is True
    assert classified.matched_rule == "bad_request_no_available_account"


def test_bad_request_alone_is_not_rate_limited() -> None:
    assert classify_rate_limit(exit_code=1, stderr="HTTP 400 malformed prompt").is_rate_limited is False
    assert (
        classify_rate_limit(exit_code=1, stderr="status 4000: no available account").is_rate_limited
        is False
    )


def test_success_exit_with_throttling_text_still_flags() -> None:
    classified = classify_rate_limit(exit_code=0, stderr="warning: too many requests, retried")
    assert classified.is_rate_limited is True
    assert classified.to_log_details() == {
        "is_rate_limited": True,
        "matched_rule": "too_many_requests",
    }

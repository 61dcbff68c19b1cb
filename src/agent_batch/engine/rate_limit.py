"""Deterministic rate-limit classification of worker tool failures."""

from __future__ import annotations

import re
from dataclasses import dataclass

RATE_LIMIT_EXIT_CODE = 429

_TOO_MANY_REQUESTS = re.compile(r"too many requests", re.IGNORECASE)
# Proxy backends answer 400 while rotating accounts; treated as throttling.
_BAD_REQUEST = re.compile(r"\b400\b")
_NO_AVAILABLE_ACCOUNT = re.compile(r"no available account", re.IGNORECASE)


@dataclass(slots=True)
class RateLimitClassification:
    """Rate-limit verdict and the rule that produced it."""

    is_rate_limited: bool
    matched_rule: str | None = None

    def to_log_details(self) -> dict[str, object]:
        return {
            "is_rate_limited": self.is_rate_limited,
            "matched_rule": self.matched_rule,
        }


def classify_rate_limit(*, exit_code: int | None, stderr: str) -> RateLimitClassification:
    """Classify a process outcome as throttled or not.

    The verdict is informational: it is surfaced on the result and in logs but
    does not change the retry policy.
    """

    if exit_code == RATE_LIMIT_EXIT_CODE:
        return RateLimitClassification(is_rate_limited=True, matched_rule="exit_code_429")
    if not stderr:
        return RateLimitClassification(is_rate_limited=False)
    if "429" in stderr:
        return RateLimitClassification(is_rate_limited=True, matched_rule="stderr_429")
    if _TOO_MANY_REQUESTS.search(stderr):
        return RateLimitClassification(is_rate_limited=True, matched_rule="too_many_requests")
    if _BAD_REQUEST.search(stderr) and _NO_AVAILABLE_ACCOUNT.search(stderr):
        return RateLimitClassification(
            is_rate_limited=True,
            matched_rule="bad_request_no_available_account",
        )
    return RateLimitClassification(is_rate_limited=False)

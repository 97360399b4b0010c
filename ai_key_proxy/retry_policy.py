from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable


class RetryAction(str, Enum):
    RELAY = "relay"
    RETRY = "retry"


@dataclass(slots=True, frozen=True)
class RetryDecision:
    action: RetryAction
    delay_seconds: float = 0.0
    mark_failed: bool = False
    reason: str | None = None

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


RELAY = RetryDecision(action=RetryAction.RELAY)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How one provider's upstream outcomes turn into retry decisions."""

    provider: str
    max_attempts: int
    classify: Callable[[int, str], RetryDecision]
    network_error_delay_seconds: float = 1.0
    scale_with_pool: bool = False
    exhausted_message: str = "All retry attempts failed"

    def attempts_for(self, pool_size: int) -> int:
        if self.scale_with_pool:
            return max(0, min(pool_size, self.max_attempts))
        return self.max_attempts


def _classify_huggingface(status_code: int, body_text: str) -> RetryDecision:
    if status_code in (429, 403):
        return RetryDecision(
            action=RetryAction.RETRY,
            delay_seconds=1.0,
            mark_failed=True,
            reason="rate_limited" if status_code == 429 else "auth_rejected",
        )
    # A cold model answers 503 with an "is currently loading" body; the key is fine.
    if status_code == 503 and "loading" in body_text:
        return RetryDecision(
            action=RetryAction.RETRY,
            delay_seconds=3.0,
            reason="model_loading",
        )
    return RELAY


def _classify_gemini(status_code: int, body_text: str) -> RetryDecision:
    if status_code in (429, 403):
        return RetryDecision(
            action=RetryAction.RETRY,
            delay_seconds=0.5,
            mark_failed=True,
            reason="quota_exceeded" if status_code == 429 else "auth_rejected",
        )
    if status_code == 503:
        return RetryDecision(
            action=RetryAction.RETRY,
            delay_seconds=2.0,
            mark_failed=True,
            reason="overloaded",
        )
    return RELAY


HUGGINGFACE_POLICY = RetryPolicy(
    provider="huggingface",
    max_attempts=3,
    classify=_classify_huggingface,
)

GEMINI_POLICY = RetryPolicy(
    provider="gemini",
    max_attempts=5,
    classify=_classify_gemini,
    scale_with_pool=True,
    exhausted_message="All Gemini keys exhausted",
)

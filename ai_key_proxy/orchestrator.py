from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from ai_key_proxy.errors import (
    ExhaustedRetriesError,
    InvalidUpstreamRequest,
    NetworkError,
    NoCredentialsConfigured,
    ProxyError,
    TransientUpstreamError,
)
from ai_key_proxy.retry_policy import RetryDecision
from ai_key_proxy.rotation import KeyRotationState, mask_credential
from ai_key_proxy.upstream import UpstreamCaller, UpstreamResult

logger = logging.getLogger("uvicorn.error")

SleepFn = Callable[[float], Awaitable[None]]
AuditHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class ProxyOutcome:
    result: UpstreamResult
    attempts: int


@dataclass(slots=True)
class _AttemptState:
    provider: str
    request_id: str
    total_attempts: int
    failures: list[ProxyError] = field(default_factory=list)
    last_error: ProxyError | None = None


class RetryOrchestrator:
    """Bounded attempt loop shared by every provider.

    Provider differences live in the caller's ``RetryPolicy``; the loop only
    selects a key, sends, classifies, and either relays or backs off.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        rotation: KeyRotationState,
        sleep: SleepFn = asyncio.sleep,
        audit_hook: AuditHook | None = None,
    ) -> None:
        self.client = client
        self.rotation = rotation
        self._sleep = sleep
        self._audit_hook = audit_hook

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def run(
        self,
        caller: UpstreamCaller,
        payload: Any,
        pool: list[str],
        *,
        request_id: str = "-",
    ) -> ProxyOutcome:
        caller.validate(payload)
        if not pool:
            raise NoCredentialsConfigured(caller.provider)

        policy = caller.policy
        state = _AttemptState(
            provider=caller.provider,
            request_id=request_id,
            total_attempts=policy.attempts_for(len(pool)),
        )
        for attempt in range(1, state.total_attempts + 1):
            has_more_attempts = attempt < state.total_attempts
            credential = self.rotation.select(caller.provider, pool)
            spec = caller.build_request(payload, credential)
            self._record_attempt(state, attempt=attempt, credential=credential)

            attempt_started = time.perf_counter()
            try:
                result = await caller.send(self.client, spec)
            except httpx.RequestError as exc:
                error = NetworkError(exc)
                state.failures.append(error)
                state.last_error = error
                logger.warning(
                    (
                        "proxy_request_error request_id=%s provider=%s attempt=%d/%d "
                        "key=%s error_type=%s error=%s"
                    ),
                    request_id,
                    caller.provider,
                    attempt,
                    state.total_attempts,
                    mask_credential(credential),
                    exc.__class__.__name__,
                    error.message,
                )
                self._audit(
                    "proxy_request_error",
                    request_id=request_id,
                    provider=caller.provider,
                    attempt=attempt,
                    total_attempts=state.total_attempts,
                    key=mask_credential(credential),
                    error_type=exc.__class__.__name__,
                    error=error.message,
                    is_timeout=error.is_timeout,
                )
                if has_more_attempts:
                    await self._sleep(policy.network_error_delay_seconds)
                continue
            except (httpx.InvalidURL, UnicodeError) as exc:
                error = InvalidUpstreamRequest(exc)
                logger.warning(
                    "proxy_invalid_upstream_request request_id=%s provider=%s key=%s error=%s",
                    request_id,
                    caller.provider,
                    mask_credential(credential),
                    error.message,
                )
                self._audit(
                    "proxy_invalid_upstream_request",
                    request_id=request_id,
                    provider=caller.provider,
                    key=mask_credential(credential),
                    error=error.message,
                )
                raise error from exc

            latency_ms = round((time.perf_counter() - attempt_started) * 1000.0, 3)
            decision = policy.classify(result.status_code, result.text)
            if not decision.should_retry:
                logger.info(
                    "proxy_response request_id=%s provider=%s status=%d attempts=%d latency_ms=%.2f",
                    request_id,
                    caller.provider,
                    result.status_code,
                    attempt,
                    latency_ms,
                )
                self._audit(
                    "proxy_response",
                    request_id=request_id,
                    provider=caller.provider,
                    status=result.status_code,
                    attempts=attempt,
                    latency_ms=latency_ms,
                )
                return ProxyOutcome(result=result, attempts=attempt)

            await self._absorb_retryable(
                state,
                decision=decision,
                result=result,
                credential=credential,
                attempt=attempt,
                has_more_attempts=has_more_attempts,
            )

        message = (
            state.last_error.message
            if state.last_error is not None
            else policy.exhausted_message
        )
        logger.error(
            "proxy_exhausted request_id=%s provider=%s attempts=%d failures=%d error=%s",
            request_id,
            caller.provider,
            state.total_attempts,
            len(state.failures),
            message,
        )
        self._audit(
            "proxy_exhausted",
            request_id=request_id,
            provider=caller.provider,
            attempts=state.total_attempts,
            failure_types=[failure.error_type for failure in state.failures],
            error=message,
        )
        raise ExhaustedRetriesError(
            message,
            attempts=state.total_attempts,
            last_error=state.last_error,
            failures=state.failures,
        )

    def _record_attempt(
        self, state: _AttemptState, *, attempt: int, credential: str
    ) -> None:
        logger.info(
            "proxy_attempt request_id=%s provider=%s attempt=%d/%d key=%s",
            state.request_id,
            state.provider,
            attempt,
            state.total_attempts,
            mask_credential(credential),
        )
        self._audit(
            "proxy_attempt",
            request_id=state.request_id,
            provider=state.provider,
            attempt=attempt,
            total_attempts=state.total_attempts,
            key=mask_credential(credential),
        )

    async def _absorb_retryable(
        self,
        state: _AttemptState,
        *,
        decision: RetryDecision,
        result: UpstreamResult,
        credential: str,
        attempt: int,
        has_more_attempts: bool,
    ) -> None:
        state.failures.append(
            TransientUpstreamError(
                status_code=result.status_code,
                reason=decision.reason or "retryable",
            )
        )
        if decision.mark_failed:
            self.rotation.mark_failed(credential)
            logger.info(
                "proxy_key_marked_failed request_id=%s provider=%s key=%s status=%d cooldown_seconds=%.1f",
                state.request_id,
                state.provider,
                mask_credential(credential),
                result.status_code,
                self.rotation.registry.cooldown_seconds,
            )
            self._audit(
                "proxy_key_marked_failed",
                request_id=state.request_id,
                provider=state.provider,
                key=mask_credential(credential),
                status=result.status_code,
            )
        if not has_more_attempts:
            return

        logger.info(
            "proxy_retry request_id=%s provider=%s attempt=%d/%d status=%d reason=%s delay_seconds=%.1f",
            state.request_id,
            state.provider,
            attempt,
            state.total_attempts,
            result.status_code,
            decision.reason,
            decision.delay_seconds,
        )
        self._audit(
            "proxy_retry",
            request_id=state.request_id,
            provider=state.provider,
            attempt=attempt,
            status=result.status_code,
            reason=decision.reason,
            delay_seconds=decision.delay_seconds,
        )
        await self._sleep(decision.delay_seconds)

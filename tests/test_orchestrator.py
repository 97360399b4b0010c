from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from ai_key_proxy.errors import (
    ExhaustedRetriesError,
    InvalidUpstreamRequest,
    MissingModel,
    NetworkError,
    NoCredentialsConfigured,
    TransientUpstreamError,
)
from ai_key_proxy.orchestrator import ProxyOutcome, RetryOrchestrator
from ai_key_proxy.rotation import FailureRegistry, KeyRotationState
from ai_key_proxy.upstream import GeminiCaller, HuggingFaceCaller, UpstreamCaller

HF_PAYLOAD = {"model": "gpt2", "inputs": "hi"}
GEMINI_PAYLOAD = {"contents": [{"role": "user", "parts": [{"text": "hi"}]}]}


class _Upstream:
    """Replays a scripted list of responses (or exceptions) and records requests."""

    def __init__(self, script: list[Any]) -> None:
        self._script = list(script)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        return step

    def hf_keys_used(self) -> list[str]:
        return [
            request.headers["authorization"].removeprefix("Bearer ")
            for request in self.requests
        ]

    def gemini_keys_used(self) -> list[str]:
        return [request.url.params["key"] for request in self.requests]


def _run(
    upstream: Callable[[httpx.Request], httpx.Response],
    caller: UpstreamCaller,
    payload: Any,
    pool: list[str],
    rotation: KeyRotationState | None = None,
    audit_events: list[dict[str, Any]] | None = None,
    delays: list[float] | None = None,
) -> tuple[ProxyOutcome, list[float]]:
    if delays is None:
        delays = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    async def _go() -> ProxyOutcome:
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
            orchestrator = RetryOrchestrator(
                client=client,
                rotation=rotation or KeyRotationState(),
                sleep=_sleep,
                audit_hook=audit_events.append if audit_events is not None else None,
            )
            return await orchestrator.run(caller, payload, pool, request_id="req-test")

    return asyncio.run(_go()), delays


def _hf() -> HuggingFaceCaller:
    return HuggingFaceCaller(base_url="http://hf.test")


def _gemini() -> GeminiCaller:
    return GeminiCaller(base_url="http://gemini.test")


def _loading() -> httpx.Response:
    return httpx.Response(503, json={"error": "Model gpt2 is currently loading"})


def test_first_success_is_returned_without_retry() -> None:
    upstream = _Upstream([httpx.Response(200, json=[{"generated_text": "hi there"}])])

    outcome, delays = _run(upstream, _hf(), HF_PAYLOAD, ["k1", "k2"])

    assert outcome.attempts == 1
    assert outcome.result.status_code == 200
    assert json.loads(outcome.result.content) == [{"generated_text": "hi there"}]
    assert delays == []
    request = upstream.requests[0]
    assert request.url == "http://hf.test/models/gpt2"
    assert request.headers["authorization"] == "Bearer k1"
    assert json.loads(request.content) == {"inputs": "hi"}


def test_rate_limited_key_is_marked_and_rotated() -> None:
    rotation = KeyRotationState()
    upstream = _Upstream(
        [
            httpx.Response(429, json={"error": "rate limited"}),
            httpx.Response(200, json={"ok": True}),
        ]
    )

    outcome, delays = _run(upstream, _hf(), HF_PAYLOAD, ["k1", "k2"], rotation=rotation)

    assert outcome.attempts == 2
    assert outcome.result.status_code == 200
    assert upstream.hf_keys_used() == ["k1", "k2"]
    assert delays == [1.0]
    assert rotation.registry.failed_at("k1") is not None
    assert rotation.registry.failed_at("k2") is None


def test_rate_limit_rotates_even_when_cursor_would_wrap() -> None:
    rotation = KeyRotationState()
    upstream = _Upstream(
        [httpx.Response(403, text="forbidden"), httpx.Response(200, json={})]
    )
    # Move the cursor onto the last key so the retry has to wrap around.
    rotation.select("huggingface", ["k1", "k2"])

    _run(upstream, _hf(), HF_PAYLOAD, ["k1", "k2"], rotation=rotation)

    assert upstream.hf_keys_used() == ["k2", "k1"]


def test_model_loading_retries_without_marking_and_exhausts_after_three_attempts() -> None:
    rotation = KeyRotationState()
    delays: list[float] = []
    upstream = _Upstream(
        [_loading(), _loading(), _loading(), httpx.Response(200, json={"ok": True})]
    )

    with pytest.raises(ExhaustedRetriesError) as excinfo:
        _run(upstream, _hf(), HF_PAYLOAD, ["k1", "k2"], rotation=rotation, delays=delays)

    assert len(upstream.requests) == 3
    assert excinfo.value.attempts == 3
    assert str(excinfo.value) == "All retry attempts failed"
    assert excinfo.value.status_code == 500
    assert all(isinstance(failure, TransientUpstreamError) for failure in excinfo.value.failures)
    assert delays == [3.0, 3.0]
    assert rotation.failed_keys_count == 0


def test_plain_503_is_terminal_for_huggingface() -> None:
    upstream = _Upstream([httpx.Response(503, text="Service Unavailable")])

    outcome, delays = _run(upstream, _hf(), HF_PAYLOAD, ["k1"])

    assert outcome.result.status_code == 503
    assert outcome.attempts == 1
    assert delays == []


def test_other_error_statuses_are_relayed_unchanged() -> None:
    upstream = _Upstream([httpx.Response(400, json={"error": "bad inputs"})])

    outcome, _ = _run(upstream, _hf(), HF_PAYLOAD, ["k1", "k2"])

    assert outcome.result.status_code == 400
    assert json.loads(outcome.result.content) == {"error": "bad inputs"}
    assert len(upstream.requests) == 1


def test_retryable_status_on_final_attempt_is_not_relayed() -> None:
    upstream = _Upstream([httpx.Response(429, json={"error": "slow down"})])
    rotation = KeyRotationState()
    delays: list[float] = []

    with pytest.raises(ExhaustedRetriesError) as excinfo:
        _run(
            upstream,
            _hf(),
            HF_PAYLOAD,
            ["k1", "k2", "k3"],
            rotation=rotation,
            delays=delays,
        )

    assert len(upstream.requests) == 3
    assert upstream.hf_keys_used() == ["k1", "k2", "k3"]
    assert str(excinfo.value) == "All retry attempts failed"
    # No wait after the last attempt.
    assert delays == [1.0, 1.0]
    assert rotation.failed_keys_count == 3


def test_network_errors_are_retried_and_last_error_is_surfaced() -> None:
    upstream = _Upstream([httpx.ConnectError("connection refused")])
    delays: list[float] = []

    with pytest.raises(ExhaustedRetriesError) as excinfo:
        _run(upstream, _hf(), HF_PAYLOAD, ["k1", "k2"], delays=delays)

    assert len(upstream.requests) == 3
    assert str(excinfo.value) == "connection refused"
    assert isinstance(excinfo.value.last_error, NetworkError)
    assert delays == [1.0, 1.0]


def test_network_error_does_not_mark_key_failed() -> None:
    rotation = KeyRotationState()
    upstream = _Upstream(
        [httpx.ReadTimeout("timed out"), httpx.Response(200, json={"ok": True})]
    )

    outcome, delays = _run(upstream, _hf(), HF_PAYLOAD, ["k1", "k2"], rotation=rotation)

    assert outcome.attempts == 2
    assert delays == [1.0]
    assert rotation.failed_keys_count == 0


def test_missing_model_fails_before_any_upstream_call() -> None:
    upstream = _Upstream([httpx.Response(200, json={})])

    with pytest.raises(MissingModel) as excinfo:
        _run(upstream, _hf(), {"inputs": "hi"}, ["k1"])

    assert excinfo.value.status_code == 400
    assert upstream.requests == []


def test_empty_pool_fails_before_any_upstream_call() -> None:
    upstream = _Upstream([httpx.Response(200, json={})])

    with pytest.raises(NoCredentialsConfigured):
        _run(upstream, _gemini(), GEMINI_PAYLOAD, [])

    assert upstream.requests == []


def test_gemini_attempts_are_bounded_by_pool_size() -> None:
    upstream = _Upstream([httpx.Response(429, json={"error": "quota"})])
    delays: list[float] = []

    with pytest.raises(ExhaustedRetriesError) as excinfo:
        _run(upstream, _gemini(), GEMINI_PAYLOAD, ["g1", "g2"], delays=delays)

    assert upstream.gemini_keys_used() == ["g1", "g2"]
    assert str(excinfo.value) == "All Gemini keys exhausted"
    assert delays == [0.5]


def test_gemini_attempts_are_capped_at_five() -> None:
    upstream = _Upstream([httpx.Response(403, json={"error": "denied"})])
    pool = [f"g{index}" for index in range(8)]

    with pytest.raises(ExhaustedRetriesError) as excinfo:
        _run(upstream, _gemini(), GEMINI_PAYLOAD, pool)

    assert excinfo.value.attempts == 5
    assert upstream.gemini_keys_used() == ["g0", "g1", "g2", "g3", "g4"]


def test_gemini_overload_marks_key_and_waits_two_seconds() -> None:
    rotation = KeyRotationState()
    upstream = _Upstream(
        [
            httpx.Response(503, json={"error": {"status": "UNAVAILABLE"}}),
            httpx.Response(200, json={"candidates": []}),
        ]
    )

    outcome, delays = _run(
        upstream, _gemini(), GEMINI_PAYLOAD, ["g1", "g2", "g3"], rotation=rotation
    )

    assert outcome.attempts == 2
    assert delays == [2.0]
    assert rotation.registry.failed_at("g1") is not None
    request = upstream.requests[-1]
    assert request.url.path == "/v1beta/models/gemini-2.5-pro:generateContent"
    assert request.url.params["key"] == "g2"
    assert json.loads(request.content) == GEMINI_PAYLOAD


def test_cooling_keys_are_skipped_across_calls() -> None:
    rotation = KeyRotationState(FailureRegistry(cooldown_seconds=30.0))
    first = _Upstream([httpx.Response(429, json={}), httpx.Response(200, json={})])
    _run(first, _hf(), HF_PAYLOAD, ["k1", "k2", "k3"], rotation=rotation)

    second = _Upstream([httpx.Response(200, json={})])
    _run(second, _hf(), HF_PAYLOAD, ["k1", "k2", "k3"], rotation=rotation)
    third = _Upstream([httpx.Response(200, json={})])
    _run(third, _hf(), HF_PAYLOAD, ["k1", "k2", "k3"], rotation=rotation)

    assert first.hf_keys_used() == ["k1", "k2"]
    assert second.hf_keys_used() == ["k3"]
    # k1 is still cooling down, so the cursor skips it.
    assert third.hf_keys_used() == ["k2"]


def test_audit_events_mask_credentials() -> None:
    events: list[dict[str, Any]] = []
    upstream = _Upstream(
        [httpx.Response(429, json={}), httpx.Response(200, json={})]
    )

    _run(
        upstream,
        _hf(),
        HF_PAYLOAD,
        ["hf_first_secret_key", "hf_second_secret_key"],
        audit_events=events,
    )

    names = [event["event"] for event in events]
    assert names == [
        "proxy_attempt",
        "proxy_key_marked_failed",
        "proxy_retry",
        "proxy_attempt",
        "proxy_response",
    ]
    serialized = json.dumps(events)
    assert "hf_first_secret_key" not in serialized
    assert events[0]["key"] == "hf_f..._key"
    assert events[-1]["status"] == 200


def test_backoff_does_not_block_a_concurrent_call() -> None:
    rotation = KeyRotationState(FailureRegistry(cooldown_seconds=30.0, clock=lambda: 1000.0))
    pool = ["k1", "k2"]
    seen_keys: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        key = request.headers["authorization"].removeprefix("Bearer ")
        seen_keys.append(key)
        if key == "k1":
            return httpx.Response(429, json={"error": "rate limited"})
        return httpx.Response(200, json={"key": key})

    async def _go() -> tuple[ProxyOutcome, ProxyOutcome, bool, list[float]]:
        backing_off = asyncio.Event()
        release = asyncio.Event()
        delays: list[float] = []

        async def gated_sleep(seconds: float) -> None:
            delays.append(seconds)
            backing_off.set()
            await release.wait()

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator = RetryOrchestrator(client=client, rotation=rotation, sleep=gated_sleep)
            first = asyncio.create_task(
                orchestrator.run(_hf(), HF_PAYLOAD, pool, request_id="req-slow")
            )
            await backing_off.wait()

            async def second_then_release() -> tuple[ProxyOutcome, bool]:
                outcome = await orchestrator.run(_hf(), HF_PAYLOAD, pool, request_id="req-fast")
                first_still_waiting = not first.done()
                release.set()
                return outcome, first_still_waiting

            first_outcome, (second_outcome, overlapped) = await asyncio.gather(
                first, second_then_release()
            )
        return first_outcome, second_outcome, overlapped, delays

    first_outcome, second_outcome, overlapped, delays = asyncio.run(_go())

    assert overlapped is True
    assert second_outcome.attempts == 1
    assert json.loads(second_outcome.result.content) == {"key": "k2"}
    assert first_outcome.attempts == 2
    assert json.loads(first_outcome.result.content) == {"key": "k2"}
    assert delays == [1.0]
    # k1 stays cooling down, so the slow call's retry skips it and lands on k2.
    assert seen_keys == ["k1", "k2", "k2"]
    assert rotation.cursor("huggingface") == 0
    assert rotation.failed_keys_count == 1
    assert rotation.registry.is_eligible("k1") is False


def test_unbuildable_upstream_request_fails_without_retry() -> None:
    upstream = _Upstream([httpx.Response(200, json={})])

    with pytest.raises(InvalidUpstreamRequest) as exc_info:
        _run(upstream, _hf(), {"model": "gpt2\n", "inputs": "hi"}, ["k1", "k2"])

    assert upstream.requests == []
    assert exc_info.value.status_code == 500
    assert isinstance(exc_info.value.cause, httpx.InvalidURL)

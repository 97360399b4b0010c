from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import uuid4

import httpx
from fastapi.responses import Response

from ai_key_proxy.errors import ProxyError, ValidationError
from ai_key_proxy.orchestrator import AuditHook, RetryOrchestrator, SleepFn
from ai_key_proxy.relay import relay_error, relay_outcome
from ai_key_proxy.rotation import FailureRegistry, KeyRotationState
from ai_key_proxy.settings import Settings
from ai_key_proxy.upstream import GeminiCaller, HuggingFaceCaller, UpstreamCaller

logger = logging.getLogger("uvicorn.error")

PROVIDERS = ("huggingface", "gemini")


class UnknownProviderError(ValueError):
    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(
            f"Unknown provider '{provider}'. Expected one of: {', '.join(PROVIDERS)}."
        )


class ProxyService:
    def __init__(
        self,
        *,
        callers: dict[str, UpstreamCaller],
        rotation: KeyRotationState | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 120.0,
        connect_timeout_seconds: float = 10.0,
        audit_hook: AuditHook | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self.callers = callers
        self.rotation = rotation or KeyRotationState()
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=max(0.1, float(timeout_seconds)),
                connect=max(0.1, min(float(connect_timeout_seconds), timeout_seconds)),
            ),
        )
        self.orchestrator = RetryOrchestrator(
            client=self.client,
            rotation=self.rotation,
            sleep=sleep or asyncio.sleep,
            audit_hook=audit_hook,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        audit_hook: AuditHook | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn | None = None,
    ) -> ProxyService:
        return cls(
            callers={
                "huggingface": HuggingFaceCaller(base_url=settings.huggingface_base_url),
                "gemini": GeminiCaller(
                    base_url=settings.gemini_base_url,
                    model=settings.gemini_model,
                ),
            },
            rotation=KeyRotationState(
                FailureRegistry(cooldown_seconds=settings.credential_cooldown_seconds)
            ),
            client=client,
            timeout_seconds=settings.upstream_timeout_seconds,
            connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
            audit_hook=audit_hook,
            sleep=sleep,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def caller_for(self, provider: str) -> UpstreamCaller:
        caller = self.callers.get(provider)
        if caller is None:
            raise UnknownProviderError(provider)
        return caller

    async def invoke(
        self,
        provider: str,
        payload: Any,
        credential_pool: list[str],
        *,
        request_id: str | None = None,
    ) -> Response:
        rid = request_id or uuid4().hex
        caller = self.caller_for(provider)
        try:
            outcome = await self.orchestrator.run(
                caller,
                payload,
                list(credential_pool),
                request_id=rid,
            )
        except ValidationError as exc:
            logger.info(
                "proxy_validation_failed request_id=%s provider=%s field=%s",
                rid,
                provider,
                exc.field,
            )
            return relay_error(exc, provider=provider, request_id=rid)
        except ProxyError as exc:
            logger.warning(
                "proxy_failed request_id=%s provider=%s error_type=%s error=%s",
                rid,
                provider,
                exc.error_type,
                exc.message,
            )
            return relay_error(exc, provider=provider, request_id=rid)
        except Exception as exc:
            logger.exception(
                "proxy_unhandled_error request_id=%s provider=%s error_type=%s",
                rid,
                provider,
                exc.__class__.__name__,
            )
            error = ProxyError(str(exc).strip() or exc.__class__.__name__)
            return relay_error(error, provider=provider, request_id=rid)
        return relay_outcome(outcome, provider=provider, request_id=rid)

    def stats(self, pools: dict[str, list[str]]) -> dict[str, int]:
        snapshot = self.rotation.snapshot()
        return {
            "hf_keys": len(pools.get("huggingface", [])),
            "gemini_keys": len(pools.get("gemini", [])),
            "current_hf_index": snapshot.cursors.get("huggingface", 0),
            "current_gemini_index": snapshot.cursors.get("gemini", 0),
            "failed_keys_count": snapshot.failed_keys_count,
        }


from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from ai_key_proxy.errors import NoCredentialsConfigured

logger = logging.getLogger("uvicorn.error")

DEFAULT_COOLDOWN_SECONDS = 30.0


def mask_credential(credential: str) -> str:
    value = credential.strip()
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"


class FailureRegistry:
    """Last-failure timestamps keyed by credential value.

    Entries are shared by every provider and are only dropped by ``clear()``;
    an entry older than the cooldown is simply ignored.
    """

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._clock = clock
        self._failed_at: dict[str, float] = {}

    @property
    def cooldown_seconds(self) -> float:
        return self._cooldown_seconds

    def now(self) -> float:
        return self._clock()

    def mark_failed(self, credential: str, now: float | None = None) -> float:
        failed_at = self._clock() if now is None else now
        self._failed_at[credential] = failed_at
        return failed_at

    def failed_at(self, credential: str) -> float | None:
        return self._failed_at.get(credential)

    def is_eligible(self, credential: str, now: float | None = None) -> bool:
        failed_at = self._failed_at.get(credential)
        if failed_at is None:
            return True
        current = self._clock() if now is None else now
        return current - failed_at >= self._cooldown_seconds

    def clear(self) -> None:
        self._failed_at.clear()

    def __len__(self) -> int:
        return len(self._failed_at)


@dataclass(slots=True)
class RotationSnapshot:
    cursors: dict[str, int]
    failed_keys_count: int
    cooldown_seconds: float


class KeyRotationState:
    """Process-wide rotation cursors plus the shared failure registry.

    One instance lives for the lifetime of the service and is handed to every
    call. All mutation goes through ``_lock`` and never spans an ``await``.
    """

    def __init__(self, registry: FailureRegistry | None = None) -> None:
        self.registry = registry if registry is not None else FailureRegistry()
        self._cursors: dict[str, int] = {}
        self._lock = Lock()

    def select(self, provider: str, pool: list[str]) -> str:
        if not pool:
            raise NoCredentialsConfigured(provider)

        size = len(pool)
        with self._lock:
            now = self.registry.now()
            cursor = self._cursors.get(provider, 0) % size
            for _ in range(size * 2):
                candidate = pool[cursor]
                cursor = (cursor + 1) % size
                self._cursors[provider] = cursor
                if self.registry.is_eligible(candidate, now):
                    return candidate

            # Every key is cooling down; forget all failures rather than stall.
            cleared = len(self.registry)
            self.registry.clear()

        logger.warning(
            "proxy_keys_reset provider=%s pool_size=%d cleared_failures=%d",
            provider,
            size,
            cleared,
        )
        return pool[0]

    def mark_failed(self, credential: str) -> float:
        with self._lock:
            return self.registry.mark_failed(credential)

    def cursor(self, provider: str) -> int:
        return self._cursors.get(provider, 0)

    @property
    def failed_keys_count(self) -> int:
        return len(self.registry)

    def snapshot(self) -> RotationSnapshot:
        with self._lock:
            return RotationSnapshot(
                cursors=dict(self._cursors),
                failed_keys_count=len(self.registry),
                cooldown_seconds=self.registry.cooldown_seconds,
            )

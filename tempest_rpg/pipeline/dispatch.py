"""Smart dispatcher: multi-tier, multi-credential request executor.

Every backend call goes through SmartDispatcher.execute(), which tries
tiers in preference order and, within a tier, credentials from a rotating
offset until one attempt succeeds. The matrix is walked at most once per
call; exhaustion returns None and the caller supplies its own fallback.

State (tier pointer, credential offset, per-tier failure times) lives in a
DispatcherState owned by the dispatcher instance.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TypeVar

from tempest_rpg.models import ModelTier

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUOTA_MARKERS = ("429", "quota", "limit", "resource_exhausted")


def is_quota_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in QUOTA_MARKERS)


def is_retryable(error: BaseException, credential_count: int) -> bool:
    """Quota errors always move on; other errors only when keys can rotate."""
    return is_quota_error(error) or credential_count > 1


@dataclass
class DispatcherState:
    current_tier: int = 0
    key_offset: int = 0
    last_failure: dict[int, float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_success(self, tier_index: int, key_index: int) -> None:
        with self._lock:
            self.current_tier = tier_index
            self.key_offset = key_index

    def record_failure(self, tier_index: int, at: float) -> None:
        with self._lock:
            self.last_failure[tier_index] = at

    def start_tier(self, now: float, cooldown: float) -> int:
        """Tier to probe first; the top tier again once its cooldown expires."""
        with self._lock:
            if self.current_tier == 0:
                return 0
            failed_at = self.last_failure.get(0)
            if failed_at is None or now - failed_at >= cooldown:
                return 0
            return self.current_tier


class SmartDispatcher:
    """Runs one operation across the tier × credential matrix.

    Args:
        tiers:        Model tiers, richest first.
        credentials:  API keys to rotate through.
        cooldown:     Seconds before a failed top tier is probed again.
        clock:        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        tiers: Sequence[ModelTier],
        credentials: Sequence[str],
        cooldown: float = 60.0,
        state: DispatcherState | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not tiers:
            raise ValueError("At least one model tier is required")
        self.tiers = list(tiers)
        self.credentials = list(credentials)
        self.cooldown = cooldown
        self.state = state or DispatcherState()
        self._clock = clock

    def _tier_order(self) -> list[int]:
        start = self.state.start_tier(self._clock(), self.cooldown)
        if start >= len(self.tiers):
            start = 0
        n = len(self.tiers)
        return [(start + i) % n for i in range(n)]

    async def execute(
        self,
        operation: str,
        fn: Callable[[str, ModelTier], Awaitable[T]],
    ) -> T | None:
        """Call fn(credential, tier) until it succeeds; None when exhausted.

        A non-retryable error (see is_retryable) propagates unchanged.
        """
        keys = self.credentials
        if not keys:
            logger.error("[%s] no API credentials configured", operation)
            return None

        for tier_index in self._tier_order():
            tier = self.tiers[tier_index]
            offset = self.state.key_offset
            for i in range(len(keys)):
                key_index = (offset + i) % len(keys)
                try:
                    result = await fn(keys[key_index], tier)
                except Exception as e:
                    self.state.record_failure(tier_index, self._clock())
                    logger.warning(
                        "[%s] attempt failed (%s, key %d): %s",
                        operation, tier.display_name, key_index + 1, str(e)[:100],
                    )
                    if is_retryable(e, len(keys)):
                        continue
                    raise
                self.state.record_success(tier_index, key_index)
                return result

        logger.error(
            "[%s] all %d tier(s) x %d key(s) exhausted",
            operation, len(self.tiers), len(keys),
        )
        return None

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from .models import Outcome, ResolutionResult


logger = logging.getLogger(__name__)


class CacheInvariantError(RuntimeError):
    """A reservation was completed or awaited without ever being taken."""


@dataclass(frozen=True)
class CacheEntry:
    result: ResolutionResult
    recorded_at: float

    @property
    def permanent(self) -> bool:
        return self.result.is_permanent

    def expired(self, now: float, ttl: float) -> bool:
        if self.permanent:
            return False
        return (now - self.recorded_at) >= ttl


def _consume_exception(fut: asyncio.Future) -> None:
    # Waiters re-raise on their own; this only keeps asyncio from warning when
    # a reservation fails with nobody waiting on it.
    if not fut.cancelled():
        fut.exception()


class ResolutionCache:
    """Process-wide reference -> resolution mapping.

    - Resolved and provider-confirmed failures (errored/deleted) are kept forever.
    - Pending and provider-unavailable entries expire after `transient_ttl` seconds.
    - `reserve()` marks a key as in flight; it never awaits, so on a single event
      loop it is atomic with respect to every other coroutine.
    """

    def __init__(self, *, transient_ttl: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.transient_ttl = float(transient_ttl)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future] = {}

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock(), self.transient_ttl):
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, result: ResolutionResult, *aliases: str | None) -> CacheEntry:
        """Store `result` under `key` and every non-empty alias (one shared entry)."""

        entry = CacheEntry(result=result, recorded_at=self._clock())
        for k in (key, *aliases):
            if not k:
                continue
            existing = self._entries.get(k)
            # A permanent answer is never downgraded by a later transient one.
            if existing is not None and existing.permanent and not entry.permanent:
                continue
            self._entries[k] = entry
        return entry

    def alias(self, key: str, *aliases: str | None) -> CacheEntry | None:
        """Point `aliases` at the live entry for `key`. No-op if `key` is absent."""

        entry = self.get(key)
        if entry is None:
            return None
        for k in aliases:
            if not k or k == key:
                continue
            existing = self._entries.get(k)
            if existing is not None and existing.permanent and not entry.permanent:
                continue
            self._entries[k] = entry
        return entry

    def seed(self, entries: Mapping[str, ResolutionResult]) -> int:
        n = 0
        for key, result in entries.items():
            if not key or result.outcome is not Outcome.RESOLVED:
                continue
            self.put(key, result)
            n += 1
        return n

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    def reserve(self, key: str) -> bool:
        """Claim the right to resolve `key`. Returns False if someone else holds it."""

        if key in self._inflight:
            return False
        fut = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_consume_exception)
        self._inflight[key] = fut
        return True

    def release(
        self,
        key: str,
        result: ResolutionResult | None = None,
        *,
        error: BaseException | None = None,
    ) -> None:
        fut = self._inflight.pop(key, None)
        if fut is None:
            raise CacheInvariantError(f"release() without reserve() for key {key!r}")
        if fut.done():
            return
        if isinstance(error, asyncio.CancelledError):
            fut.cancel()
        elif error is not None:
            fut.set_exception(error)
        elif result is None:
            fut.set_exception(CacheInvariantError(f"reservation for {key!r} released without a result"))
        else:
            fut.set_result(result)

    async def wait(self, key: str) -> ResolutionResult:
        """Wait for the in-flight resolution of `key` (for callers that lost `reserve`)."""

        fut = self._inflight.get(key)
        if fut is None:
            entry = self.get(key)
            if entry is not None:
                return entry.result
            raise CacheInvariantError(f"wait() on {key!r} with no reservation and no entry")
        # Shielded: a cancelled waiter must not cancel the shared future.
        return await asyncio.shield(fut)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, int]:
        now = self._clock()
        live = {k: e for k, e in self._entries.items() if not e.expired(now, self.transient_ttl)}
        resolved = sum(1 for e in live.values() if e.result.is_resolved)
        negative = sum(1 for e in live.values() if e.result.is_terminal_failure)
        return {
            "keys": len(live),
            "resolved": resolved,
            "negative": negative,
            "transient": len(live) - resolved - negative,
            "in_flight": len(self._inflight),
        }

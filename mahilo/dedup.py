"""
Duplicate suppression — remembers processed message ids for a TTL.

One tracker per process, owned by whoever builds the inbound gate. Entries
expire lazily on lookup; a background sweep bounds memory for ids that are
never looked up again.

Depends on: config
"""

import asyncio
import sys
import time
from typing import Callable, Optional

from mahilo.config import DEDUP_SWEEP_INTERVAL, DEDUP_TTL_SECONDS


class DedupTracker:
    """Process-local message_id -> first_seen_at map with TTL."""

    def __init__(self, ttl: float = DEDUP_TTL_SECONDS,
                 sweep_interval: float = DEDUP_SWEEP_INTERVAL,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._seen)

    def _expired(self, first_seen_at: float, now: float) -> bool:
        return now - first_seen_at > self.ttl

    def has(self, message_id: str) -> bool:
        """True if message_id was marked within the TTL. Drops it if expired."""
        first_seen_at = self._seen.get(message_id)
        if first_seen_at is None:
            return False
        if self._expired(first_seen_at, self._clock()):
            del self._seen[message_id]
            return False
        return True

    def mark(self, message_id: str) -> None:
        self._seen[message_id] = self._clock()

    def check_and_mark(self, message_id: str) -> bool:
        """Return True if already seen; otherwise mark it and return False."""
        if self.has(message_id):
            return True
        self.mark(message_id)
        return False

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [mid for mid, ts in self._seen.items() if self._expired(ts, now)]
        for mid in expired:
            del self._seen[mid]
        return len(expired)

    def clear(self) -> None:
        self._seen.clear()

    # -------------------------------------------------------------------------
    # Background sweep
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop. Idempotent."""
        if self.running:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the periodic sweep and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                removed = self.sweep()
                if removed:
                    print(f"[Mahilo] Dedup sweep removed {removed} expired message id(s)", file=sys.stderr)
            except asyncio.CancelledError:
                return
            except Exception as e:
                print(f"[Mahilo] Dedup sweep error: {e}", file=sys.stderr)

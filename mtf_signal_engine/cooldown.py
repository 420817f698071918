from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Optional, Protocol

from .models import HOLD, CooldownEntry, Decision

log = logging.getLogger("cooldown")

DEFAULT_WINDOW_S = 6 * 3600


def now_ms() -> int:
    return int(time.time() * 1000)


class CooldownStore(Protocol):
    def get(self, key: str) -> Optional[int]: ...

    def set(self, key: str, ts_ms: int) -> None: ...

    def check_and_set(self, key: str, now_ms: int, window_ms: int) -> bool:
        """Record `now_ms` for `key` and return True unless `key` fired within `window_ms`."""
        ...


class InMemoryCooldownStore:
    """Process-local store; one lock guards every read-modify-write."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, CooldownEntry] = {}

    def get(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(key)
            return entry.last_fired_ms if entry is not None else None

    def set(self, key: str, ts_ms: int) -> None:
        with self._lock:
            self._entries[key] = CooldownEntry(key=key, last_fired_ms=int(ts_ms))

    def check_and_set(self, key: str, now_ms: int, window_ms: int) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now_ms - entry.last_fired_ms < window_ms:
                return False
            self._entries[key] = CooldownEntry(key=key, last_fired_ms=int(now_ms))
            return True


def cooldown_key(symbol: Optional[str], direction: str) -> str:
    return f"{(symbol or '').upper()}|{direction}"


class CooldownGate:
    def __init__(
        self,
        store: Optional[CooldownStore] = None,
        window_s: float = DEFAULT_WINDOW_S,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store if store is not None else InMemoryCooldownStore()
        self.window_ms = int(window_s * 1000)
        self.clock = clock

    def apply(self, decision: Decision) -> Decision:
        """Downgrade a repeat of the same symbol and direction inside the window to HOLD."""
        if not decision.actionable or decision.direction is None:
            return decision
        key = cooldown_key(decision.symbol, decision.direction)
        now = int(self.clock())
        if self.store.check_and_set(key, now, self.window_ms):
            return decision

        last = self.store.get(key)
        remaining_s = None if last is None else max(0, (last + self.window_ms - now) // 1000)
        log.info("cooldown_suppressed key=%s remaining_s=%s", key, remaining_s)
        details = dict(decision.details)
        details["cooldown_remaining_s"] = remaining_s
        details["suppressed_signal"] = decision.signal
        return replace(decision, signal=HOLD, plan=None, reason="cooldown", details=details)

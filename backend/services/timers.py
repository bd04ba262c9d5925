"""
One-shot timers keyed by (kind, round id).

Scheduling a timer for a newer round of the same kind cancels every older
round's timers, and cancel_all() runs on reset and game over, so a callback
from a superseded round never fires.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

DELIBERATION_BOTS = "deliberation_bots"
MURDER_WINDOW = "murder_window"
MURDER_BOTS = "murder_bots"
MURDER_REVEAL = "murder_reveal"
JOIN_TIMEOUT = "join_timeout"

TimerKey = Tuple[str, int]


class TimerRegistry:
    def __init__(self):
        self._timers: Dict[TimerKey, List[Any]] = {}

    def schedule(self, kind: str, round_id: int, delay: float, callback: Callable[[], None]) -> None:
        for key in [k for k in self._timers if k[0] == kind and k[1] != round_id]:
            self._cancel_key(key)

        key = (kind, round_id)
        handles = self._timers.setdefault(key, [])
        holder: List[Any] = []

        def fire() -> None:
            handle = holder[0]
            live = self._timers.get(key)
            if live is None or handle not in live:
                return
            live.remove(handle)
            if not live:
                del self._timers[key]
            callback()

        holder.append(self._call_later(max(0.0, delay), fire))
        handles.append(holder[0])

    def cancel(self, kind: str) -> None:
        for key in [k for k in self._timers if k[0] == kind]:
            self._cancel_key(key)

    def cancel_all(self) -> None:
        for key in list(self._timers):
            self._cancel_key(key)

    def pending(self, kind: str) -> int:
        return sum(len(h) for k, h in self._timers.items() if k[0] == kind)

    def is_current(self, kind: str, round_id: int) -> bool:
        return (kind, round_id) in self._timers

    # ── Internal ───────────────────────────────────────────────────────────────

    def _cancel_key(self, key: TimerKey) -> None:
        for handle in self._timers.pop(key, []):
            handle.cancel()
        logger.debug(f"Timers cancelled: {key[0]} round {key[1]}")

    def _call_later(self, delay: float, fn: Callable[[], None]) -> Any:
        return asyncio.get_running_loop().call_later(delay, fn)

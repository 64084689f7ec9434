"""
Debounce Coalescer — collapses a burst of edits into one deferred action.

Timers are keyed by (entity_id, field_or_operation). Scheduling a key that
already has a live timer cancels it and starts a fresh quiescence window with
the new value (trailing edge, last value wins). Different keys run independent
timers. Producers may be plain callables or coroutine functions; awaitables
are run as tasks tracked until they settle.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

TimerKey = Tuple[str, str]


@dataclass
class _PendingTimer:
    key: TimerKey
    value: Any
    producer: Callable[[Any], Any]
    deadline: float
    handle: Optional[asyncio.TimerHandle] = None


class DebounceCoalescer:
    """Per-key trailing-edge debounce on the running event loop."""

    def __init__(self, window_seconds: float = 1.0):
        self.window_seconds = window_seconds
        self._timers: Dict[TimerKey, _PendingTimer] = {}
        self._inflight: Set[asyncio.Future] = set()

    def schedule(
        self,
        key: TimerKey,
        value: Any,
        producer: Callable[[Any], Any],
        window_seconds: Optional[float] = None,
    ) -> None:
        """Record `value` under `key` and (re)start its quiescence window."""
        loop = asyncio.get_running_loop()
        delay = self.window_seconds if window_seconds is None else window_seconds

        previous = self._timers.pop(key, None)
        if previous is not None and previous.handle is not None:
            previous.handle.cancel()

        timer = _PendingTimer(
            key=key,
            value=value,
            producer=producer,
            deadline=loop.time() + delay,
        )
        timer.handle = loop.call_later(delay, self._fire, timer)
        self._timers[key] = timer

    def _fire(self, timer: _PendingTimer) -> None:
        if self._timers.get(timer.key) is not timer:
            return  # replaced or cancelled meanwhile
        del self._timers[timer.key]
        logger.debug(f"Debounce fired for {timer.key}")
        self._run(timer)

    def _run(self, timer: _PendingTimer) -> Optional[asyncio.Future]:
        try:
            result = timer.producer(timer.value)
        except Exception:
            logger.exception(f"Producer for {timer.key} failed")
            return None
        if not inspect.isawaitable(result):
            return None
        task = asyncio.ensure_future(result)
        self._inflight.add(task)
        task.add_done_callback(self._settled)
        return task

    def _settled(self, task: asyncio.Future) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Debounced action failed: {exc!r}")

    # --- Inspection ---

    def is_pending(self, key: TimerKey) -> bool:
        return key in self._timers

    def pending_value(self, key: TimerKey) -> Any:
        timer = self._timers.get(key)
        return timer.value if timer else None

    def pending_keys(self, entity_id: Optional[str] = None) -> List[TimerKey]:
        return [k for k in self._timers if entity_id is None or k[0] == entity_id]

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    # --- Cancellation ---

    def cancel(self, key: TimerKey) -> bool:
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        if timer.handle is not None:
            timer.handle.cancel()
        return True

    def cancel_where(self, predicate: Callable[[TimerKey], bool]) -> int:
        keys = [k for k in self._timers if predicate(k)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def cancel_entity(self, entity_id: str) -> int:
        return self.cancel_where(lambda k: k[0] == entity_id)

    def cancel_all(self) -> int:
        """Teardown: no timer fires after this returns."""
        count = self.cancel_where(lambda k: True)
        if count:
            logger.debug(f"Cancelled {count} pending timer(s)")
        return count

    # --- Identity remap ---

    def rekey_entity(self, old_id: str, new_id: str) -> None:
        """Move timers scheduled against a placeholder to the real id."""
        for key in [k for k in self._timers if k[0] == old_id]:
            timer = self._timers.pop(key)
            timer.key = (new_id, key[1])
            replaced = self._timers.pop(timer.key, None)
            if replaced is not None and replaced.handle is not None:
                replaced.handle.cancel()
            self._timers[timer.key] = timer

    # --- Flushing ---

    async def flush(self, entity_id: Optional[str] = None) -> None:
        """Fire matching timers now and wait for every in-flight action."""
        for key in self.pending_keys(entity_id):
            timer = self._timers.pop(key)
            if timer.handle is not None:
                timer.handle.cancel()
            self._run(timer)
        await self.drain()

    async def drain(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

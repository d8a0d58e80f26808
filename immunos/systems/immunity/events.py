"""
ImmunOS — Immunity Event Bus

Outcome events for the host: step scanned, step rejected, vector failed
open, repair succeeded or failed, pattern recorded or promoted.

The coordinator never reaches into the host's dispatch internals. It
emits events here and the host subscribes. In-memory only; callbacks get a
short timeout and their errors are logged, never propagated.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from collections.abc import Callable, Coroutine
from typing import Any

import structlog

from immunos.systems.immunity.types import ImmunityEvent, ImmunityEventType

logger = structlog.get_logger("immunos.systems.immunity.events")

# Callback signature: async def handler(event: ImmunityEvent) -> None
EventCallback = Callable[[ImmunityEvent], Coroutine[Any, Any, None]]

# Maximum time a callback gets before we log a warning and move on
_CALLBACK_TIMEOUT_S: float = 0.1

# Maximum recent events to keep in the ring buffer per event type
_RECENT_BUFFER_SIZE: int = 100


class ImmunityEventBus:
    """In-memory pub/sub for immunity outcome events."""

    def __init__(self, callback_timeout_s: float = _CALLBACK_TIMEOUT_S) -> None:
        self._callback_timeout_s = callback_timeout_s
        self._logger = logger.bind(system="immunity", component="event_bus")

        self._subscribers: dict[ImmunityEventType, list[EventCallback]] = defaultdict(list)
        self._global_subscribers: list[EventCallback] = []

        self._recent: dict[ImmunityEventType, deque[ImmunityEvent]] = defaultdict(
            lambda: deque(maxlen=_RECENT_BUFFER_SIZE)
        )

        self._total_emitted: int = 0
        self._total_callback_timeouts: int = 0
        self._total_callback_errors: int = 0

    # ─── Subscription ────────────────────────────────────────────────

    def subscribe(
        self,
        event_type: ImmunityEventType,
        callback: EventCallback,
    ) -> None:
        """Register a callback for a specific event type."""
        self._subscribers[event_type].append(callback)

    def subscribe_all(self, callback: EventCallback) -> None:
        """Register a callback that receives every event."""
        self._global_subscribers.append(callback)

    # ─── Emission ────────────────────────────────────────────────────

    async def emit(self, event: ImmunityEvent) -> None:
        """Publish an event to all registered listeners, in subscription order."""
        self._total_emitted += 1
        self._recent[event.event_type].append(event)

        callbacks = list(self._subscribers.get(event.event_type, []))
        callbacks.extend(self._global_subscribers)
        if callbacks:
            await self._dispatch_callbacks(callbacks, event)

    async def _dispatch_callbacks(
        self,
        callbacks: list[EventCallback],
        event: ImmunityEvent,
    ) -> None:
        for callback in callbacks:
            try:
                await asyncio.wait_for(
                    callback(event),
                    timeout=self._callback_timeout_s,
                )
            except TimeoutError:
                self._total_callback_timeouts += 1
                self._logger.warning(
                    "event_callback_timeout",
                    event_type=event.event_type.value,
                    callback=getattr(callback, "__name__", str(callback)),
                )
            except Exception as exc:
                self._total_callback_errors += 1
                self._logger.error(
                    "event_callback_error",
                    event_type=event.event_type.value,
                    error=str(exc),
                )

    # ─── Query ───────────────────────────────────────────────────────

    def recent(
        self,
        event_type: ImmunityEventType,
        limit: int = 10,
    ) -> list[ImmunityEvent]:
        """Return recent events of a given type (most recent first)."""
        buf = self._recent.get(event_type)
        if not buf:
            return []
        items = list(buf)
        items.reverse()
        return items[:limit]

    # ─── Stats ───────────────────────────────────────────────────────

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_emitted": self._total_emitted,
            "callback_timeouts": self._total_callback_timeouts,
            "callback_errors": self._total_callback_errors,
            "subscriber_count": sum(
                len(v) for v in self._subscribers.values()
            ) + len(self._global_subscribers),
            "recent_buffer_sizes": {
                et.value: len(buf) for et, buf in self._recent.items()
            },
        }

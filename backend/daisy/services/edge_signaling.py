"""
Edge activity signaling.

Marks the edges feeding an executing node as "flowing" for a short time.
Each activation is tracked separately and expires on its own timer, so two
overlapping activations of the same edge keep it active until both are gone.
Nothing here ever blocks the caller.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import Counter

from daisy.services.event_bus import EventBus, EventType

logger = logging.getLogger(__name__)


class EdgeActivitySignaler:
    def __init__(
        self,
        bus: EventBus | None = None,
        default_duration: float = 3.0,
        test_duration: float = 5.0,
    ):
        self.bus = bus
        self.default_duration = default_duration
        self.test_duration = test_duration
        self._counts: Counter[str] = Counter()
        self._activations: dict[int, list[str]] = {}
        self._timers: dict[int, asyncio.TimerHandle] = {}
        self._ids = itertools.count(1)

    @property
    def active_edges(self) -> frozenset[str]:
        return frozenset(edge_id for edge_id, count in self._counts.items() if count > 0)

    def is_active(self, edge_id: str) -> bool:
        return self._counts.get(edge_id, 0) > 0

    def activate(self, edge_ids: list[str], duration: float | None = None) -> int:
        """
        Mark edges active and schedule their removal after duration seconds.

        Returns an activation id accepted by deactivate().
        """
        activation_id = next(self._ids)
        ids = list(dict.fromkeys(edge_ids))
        self._activations[activation_id] = ids
        self._counts.update(ids)

        delay = self.default_duration if duration is None else duration
        loop = asyncio.get_running_loop()
        self._timers[activation_id] = loop.call_later(delay, self._expire, activation_id)

        if ids and self.bus is not None:
            self.bus.emit(EventType.EDGES_ACTIVATED, edge_ids=ids, activation_id=activation_id)
        logger.debug("Activation %d: %d edges for %.1fs", activation_id, len(ids), delay)
        return activation_id

    def deactivate(self, activation_id: int) -> None:
        """Remove exactly the edges added by one activation. No-op once expired."""
        timer = self._timers.pop(activation_id, None)
        if timer is not None:
            timer.cancel()
        self._release(activation_id)

    def deactivate_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._activations.clear()
        cleared = sorted(self.active_edges)
        self._counts.clear()
        if cleared and self.bus is not None:
            self.bus.emit(EventType.EDGES_DEACTIVATED, edge_ids=cleared)

    def test_animation(self, edge_ids: list[str], duration: float | None = None) -> int:
        """Activate every given edge, then clear the whole set after a longer delay."""
        delay = self.test_duration if duration is None else duration
        activation_id = self.activate(edge_ids, duration=delay)
        # Replace the per-activation expiry with a full clear
        self._timers[activation_id].cancel()
        loop = asyncio.get_running_loop()
        self._timers[activation_id] = loop.call_later(delay, self.deactivate_all)
        return activation_id

    def _expire(self, activation_id: int) -> None:
        self._timers.pop(activation_id, None)
        self._release(activation_id)

    def _release(self, activation_id: int) -> None:
        ids = self._activations.pop(activation_id, None)
        if not ids:
            return
        released: list[str] = []
        for edge_id in ids:
            self._counts[edge_id] -= 1
            if self._counts[edge_id] <= 0:
                del self._counts[edge_id]
                released.append(edge_id)
        if released and self.bus is not None:
            self.bus.emit(
                EventType.EDGES_DEACTIVATED,
                edge_ids=released,
                activation_id=activation_id,
            )

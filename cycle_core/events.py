"""
EVENTS
======

Lifecycle events emitted by the loop controller and the eternal scheduler.

Observers are plain callables ``observer(event)`` registered on an
``EventChannel``. Delivery is synchronous, on the emitting thread, in
subscription order. An observer that raises is logged with its traceback and
skipped; the remaining observers still receive the event and the pipeline is
not affected.

Event Names
-----------
- ``cycle-start``         {run_id, cycle_id, input}
- ``tribunal-decision``   {run_id, cycle_id, verdict}
- ``memory-update``       {run_id, cycle_id, history_size}
- ``cycle-end``           {run_id, cycle_id, cycle}   (the finalized record)
- ``memory-purge``        {run_id, cycle_id, removed}
- ``error``               {run_id, cycle_id, error}
- ``eternal-loop-start``  {loop_count, interval_seconds}
- ``eternal-loop-stop``   {loop_count, total_cycles}
- ``eternal-loop-stats``  {loop_count, duration_ms, interval_seconds, ...}

The channel also keeps the last ``history_size`` events so status endpoints
can show recent activity without subscribing.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List

logger = logging.getLogger(__name__)

CYCLE_START = "cycle-start"
CYCLE_END = "cycle-end"
TRIBUNAL_DECISION = "tribunal-decision"
MEMORY_UPDATE = "memory-update"
MEMORY_PURGE = "memory-purge"
ERROR = "error"
ETERNAL_LOOP_START = "eternal-loop-start"
ETERNAL_LOOP_STOP = "eternal-loop-stop"
ETERNAL_LOOP_STATS = "eternal-loop-stats"


@dataclass
class LifecycleEvent:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        payload = {}
        for key, value in self.payload.items():
            payload[key] = value.to_dict() if hasattr(value, "to_dict") else value
        return {"name": self.name, "timestamp": self.timestamp, "payload": payload}


Observer = Callable[[LifecycleEvent], None]


class EventChannel:
    """Explicit, ordered observer list."""

    def __init__(self, history_size: int = 100):
        self._observers: List[Observer] = []
        self._recent: Deque[LifecycleEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, observer: Observer) -> Observer:
        """Register an observer. Returns it so this can be used as a decorator."""
        with self._lock:
            self._observers.append(observer)
        return observer

    def unsubscribe(self, observer: Observer) -> bool:
        with self._lock:
            try:
                self._observers.remove(observer)
                return True
            except ValueError:
                return False

    def emit(self, name: str, payload: Dict[str, Any] = None) -> LifecycleEvent:
        event = LifecycleEvent(name=name, payload=payload or {})
        with self._lock:
            observers = list(self._observers)
            self._recent.append(event)
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception("Observer %r failed on event '%s'", observer, name)
        return event

    def recent(self, limit: int = 20) -> List[LifecycleEvent]:
        with self._lock:
            return list(self._recent)[-limit:] if limit > 0 else []

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)

"""
CYCLE_HISTORY
=============

Bounded, FIFO-evicting store of finalized cycles.

The loop controller is the only writer. Everything else (status endpoints,
the scheduler, session export) only reads, so a single lock around the
deque is enough to give readers a consistent view while a run is in
progress.

Operations
----------
::

    store(cycle)          - Append; evict the oldest when over capacity
    recent(n)             - Last n cycles, oldest first (a new list)
    recall(cycle_id)      - Look up by id (optionally scoped to a run_id)
    purge()               - Clear everything (safety recovery)

    recent_agents(3)      - agent_used of the last 3 cycles
    recent_violations(3)  - rule_violation flags of the last 3 cycles
    snapshot()            - HistorySnapshot (patterns, themes, streak)
    export_log()          - JSON string of the whole store
"""

import json
import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from ..models import Cycle, HistorySnapshot

logger = logging.getLogger(__name__)

# Substring in recent inputs → theme label
THEME_KEYWORDS = {
    "conscious": "Consciousness exploration",
    "ethic": "Ethical reasoning",
    "recursive": "Recursive thinking",
}

CONVERGENCE_WINDOW = 3
HIGH_CONTRADICTION = 0.5
THEME_WINDOW = 5


class CycleHistoryStore:
    """Ring buffer of stored cycles with derived summary statistics."""

    DEFAULT_CAPACITY = 1000

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self.capacity = capacity
        self._cycles: Deque[Cycle] = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cycles)

    # ========================================================================
    # MUTATION (controller only)
    # ========================================================================

    def store(self, cycle: Cycle) -> None:
        with self._lock:
            self._cycles.append(cycle)
            while len(self._cycles) > self.capacity:
                evicted = self._cycles.popleft()
                logger.debug("Evicted cycle %s/%d from history", evicted.run_id, evicted.id)

    def purge(self) -> int:
        """Remove every stored cycle. Returns how many were removed."""
        with self._lock:
            removed = len(self._cycles)
            self._cycles.clear()
        logger.info("History purged (%d cycles removed)", removed)
        return removed

    # ========================================================================
    # QUERIES
    # ========================================================================

    def recent(self, n: int) -> List[Cycle]:
        if n <= 0:
            return []
        with self._lock:
            return list(self._cycles)[-n:]

    def all(self) -> List[Cycle]:
        with self._lock:
            return list(self._cycles)

    def recall(self, cycle_id: int, run_id: Optional[str] = None) -> Optional[Cycle]:
        """Most recent stored cycle with this id (and run, if given)."""
        with self._lock:
            for cycle in reversed(self._cycles):
                if cycle.id == cycle_id and (run_id is None or cycle.run_id == run_id):
                    return cycle
        return None

    def recent_outputs(self, n: int) -> List[str]:
        """Generator texts of the last n cycles."""
        return [c.generator_output.text for c in self.recent(n) if c.generator_output]

    def recent_analyses(self, n: int) -> List[str]:
        return [c.analyst_output.text for c in self.recent(n) if c.analyst_output]

    def recent_actions(self, n: int) -> List[str]:
        return [c.action_result.text for c in self.recent(n) if c.action_result]

    def recent_agents(self, n: int = 3) -> List[str]:
        return [c.action_result.agent_used for c in self.recent(n) if c.action_result]

    def recent_violations(self, n: int = 3) -> List[bool]:
        return [bool(c.safety_verdict and c.safety_verdict.rule_violation) for c in self.recent(n)]

    def recent_directives(self, n: int) -> List[Optional[str]]:
        return [c.directive for c in self.recent(n)]

    def violation_streak(self) -> int:
        """Number of consecutive rule violations at the end of the history."""
        return self._streak(self.all())

    @staticmethod
    def _streak(cycles: List[Cycle]) -> int:
        streak = 0
        for cycle in reversed(cycles):
            if not (cycle.safety_verdict and cycle.safety_verdict.rule_violation):
                break
            streak += 1
        return streak

    # ========================================================================
    # DERIVED VIEWS
    # ========================================================================

    def _patterns(self, cycles: List[Cycle]) -> List[str]:
        patterns = []
        window = cycles[-CONVERGENCE_WINDOW:]
        if len(window) < CONVERGENCE_WINDOW:
            return patterns
        agents = [c.action_result.agent_used if c.action_result else "" for c in window]
        if len(set(agents)) == 1 and agents[0]:
            patterns.append(f"{agents[0]} agent dominant")
        if all(c.safety_verdict and c.safety_verdict.contradiction > HIGH_CONTRADICTION for c in window):
            patterns.append("high contradiction")
        return patterns

    @staticmethod
    def _themes(cycles: List[Cycle]) -> List[str]:
        inputs = [c.input.lower() for c in cycles[-THEME_WINDOW:]]
        return [label for key, label in THEME_KEYWORDS.items() if any(key in text for text in inputs)]

    def snapshot(self) -> HistorySnapshot:
        cycles = self.all()
        return HistorySnapshot(
            total_cycles=len(cycles),
            recent_patterns=tuple(self._patterns(cycles)),
            emergent_themes=tuple(self._themes(cycles)),
            recent_agents=tuple(c.action_result.agent_used for c in cycles[-3:] if c.action_result),
            violation_streak=self._streak(cycles),
            timestamp=time.time(),
        )

    def export_log(self) -> str:
        """Serialize the whole store (plus a snapshot summary) as JSON."""
        cycles = self.all()
        data: Dict = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "total_cycles": len(cycles),
            "cycles": [c.to_dict() for c in cycles],
            "summary": self.snapshot().to_dict(),
        }
        return json.dumps(data, indent=2, default=str)

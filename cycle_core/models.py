"""
MODELS
======

Core records for the cycle pipeline.

A ``Cycle`` is both the unit of work and the unit of history. The controller
creates one when a cycle begins, fills its fields as each stage completes, and
hands it to the history store once the safety verdict is in. From then on it
is never edited again. It only leaves the store through FIFO eviction or a
purge.

Record Hierarchy
----------------
::

    Cycle
    ├── generator_output : StageResponse
    ├── analyst_output   : StageResponse
    ├── action_result    : ActionResult  (StageResponse + dispatch outcome)
    ├── safety_verdict   : SafetyVerdict
    └── snapshot         : HistorySnapshot (frozen view at storage time)

    RunResult  - what LoopController.start() returns for one bounded run

Every record serializes with ``to_dict()`` / ``from_dict()`` so session logs
can be written to and read back from JSON.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================================
# LOOP STATE
# ============================================================================

class LoopState(str, Enum):
    """Lifecycle states of a bounded run."""
    IDLE = "idle"
    RUNNING = "running"
    HALTED = "halted"
    COMPLETED = "completed"
    STOPPED = "stopped"


# ============================================================================
# STAGE PAYLOADS
# ============================================================================

@dataclass
class StageResponse:
    """Text produced by one stage, with a confidence score."""
    text: str
    confidence: float
    reasoning: List[str] = field(default_factory=list)
    stage: str = ""
    model: Optional[str] = None
    duration_ms: int = 0
    fallback: bool = False

    def to_dict(self) -> Dict:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "stage": self.stage,
            "model": self.model,
            "duration_ms": self.duration_ms,
            "fallback": self.fallback,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "StageResponse":
        return cls(
            text=data.get("text", ""),
            confidence=data.get("confidence", 0.0),
            reasoning=data.get("reasoning", []),
            stage=data.get("stage", ""),
            model=data.get("model"),
            duration_ms=data.get("duration_ms", 0),
            fallback=data.get("fallback", False),
        )


@dataclass
class ActionResult(StageResponse):
    """Actor stage output plus the outcome of dispatching its decision."""
    agent_used: str = ""
    action: str = ""
    parameters: Any = None
    result: Any = None
    success: bool = False
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        d = super().to_dict()
        d.update({
            "agent_used": self.agent_used,
            "action": self.action,
            "parameters": self.parameters,
            "result": self.result,
            "success": self.success,
            "logs": list(self.logs),
        })
        return d

    def outcome_dict(self) -> Dict:
        """The dispatch outcome only, as seen by the safety evaluator."""
        return {
            "agent_used": self.agent_used,
            "action": self.action,
            "result": self.result,
            "success": self.success,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ActionResult":
        return cls(
            text=data.get("text", ""),
            confidence=data.get("confidence", 0.0),
            reasoning=data.get("reasoning", []),
            stage=data.get("stage", "actor"),
            model=data.get("model"),
            duration_ms=data.get("duration_ms", 0),
            fallback=data.get("fallback", False),
            agent_used=data.get("agent_used", ""),
            action=data.get("action", ""),
            parameters=data.get("parameters"),
            result=data.get("result"),
            success=data.get("success", False),
            logs=data.get("logs", []),
        )


# ============================================================================
# SAFETY VERDICT
# ============================================================================

@dataclass
class SafetyVerdict:
    """Safety evaluation of one completed cycle."""
    contradiction: float
    uncertainty: float
    rule_violation: bool
    should_halt: bool
    reason: str = ""

    def to_dict(self) -> Dict:
        return {
            "contradiction": self.contradiction,
            "uncertainty": self.uncertainty,
            "rule_violation": self.rule_violation,
            "should_halt": self.should_halt,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SafetyVerdict":
        return cls(
            contradiction=data.get("contradiction", 0.0),
            uncertainty=data.get("uncertainty", 0.0),
            rule_violation=data.get("rule_violation", False),
            should_halt=data.get("should_halt", False),
            reason=data.get("reason", ""),
        )


# ============================================================================
# HISTORY SNAPSHOT
# ============================================================================

@dataclass(frozen=True)
class HistorySnapshot:
    """Read-only aggregate view of the history store at one moment."""
    total_cycles: int = 0
    recent_patterns: tuple = ()
    emergent_themes: tuple = ()
    recent_agents: tuple = ()
    violation_streak: int = 0
    timestamp: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "total_cycles": self.total_cycles,
            "recent_patterns": list(self.recent_patterns),
            "emergent_themes": list(self.emergent_themes),
            "recent_agents": list(self.recent_agents),
            "violation_streak": self.violation_streak,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "HistorySnapshot":
        return cls(
            total_cycles=data.get("total_cycles", 0),
            recent_patterns=tuple(data.get("recent_patterns", [])),
            emergent_themes=tuple(data.get("emergent_themes", [])),
            recent_agents=tuple(data.get("recent_agents", [])),
            violation_streak=data.get("violation_streak", 0),
            timestamp=data.get("timestamp", 0.0),
        )


# ============================================================================
# CYCLE
# ============================================================================

@dataclass
class Cycle:
    """
    One pass through Generator → Analyst → Actor → Safety.

    ``id`` restarts at 0 for every bounded run; ``run_id`` tells runs apart
    when one history store outlives several runs (eternal mode).
    """
    id: int
    input: str
    run_id: str = ""
    timestamp: float = field(default_factory=time.time)
    generator_output: Optional[StageResponse] = None
    analyst_output: Optional[StageResponse] = None
    action_result: Optional[ActionResult] = None
    safety_verdict: Optional[SafetyVerdict] = None
    snapshot: Optional[HistorySnapshot] = None
    directive: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return (
            self.generator_output is not None
            and self.analyst_output is not None
            and self.action_result is not None
            and self.safety_verdict is not None
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "input": self.input,
            "generator_output": self.generator_output.to_dict() if self.generator_output else None,
            "analyst_output": self.analyst_output.to_dict() if self.analyst_output else None,
            "action_result": self.action_result.to_dict() if self.action_result else None,
            "safety_verdict": self.safety_verdict.to_dict() if self.safety_verdict else None,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "directive": self.directive,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Cycle":
        gen = data.get("generator_output")
        ana = data.get("analyst_output")
        act = data.get("action_result")
        ver = data.get("safety_verdict")
        snap = data.get("snapshot")
        return cls(
            id=data["id"],
            input=data.get("input", ""),
            run_id=data.get("run_id", ""),
            timestamp=data.get("timestamp", 0.0),
            generator_output=StageResponse.from_dict(gen) if gen else None,
            analyst_output=StageResponse.from_dict(ana) if ana else None,
            action_result=ActionResult.from_dict(act) if act else None,
            safety_verdict=SafetyVerdict.from_dict(ver) if ver else None,
            snapshot=HistorySnapshot.from_dict(snap) if snap else None,
            directive=data.get("directive"),
        )


# ============================================================================
# RUN RESULT
# ============================================================================

@dataclass
class RunResult:
    """Outcome of one bounded run (one call to LoopController.start)."""
    run_id: str
    status: LoopState
    reason: str
    cycles_run: int = 0
    cycle_ids: List[int] = field(default_factory=list)
    duration_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        d = {
            "run_id": self.run_id,
            "status": self.status.value,
            "reason": self.reason,
            "cycles_run": self.cycles_run,
            "cycle_ids": list(self.cycle_ids),
            "duration_ms": self.duration_ms,
        }
        if self.error:
            d["error"] = self.error
        return d

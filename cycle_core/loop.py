"""
LOOP_CONTROLLER
===============

Core execution engine for cycleCore.

Owns one bounded run at a time and sequences the pipeline stages for every
cycle. Everything else (the eternal scheduler, the API, the CLI) ultimately
calls ``LoopController.start()``.

States
------
::

    IDLE ──start()──▶ RUNNING ──┬──▶ COMPLETED   (max_cycles reached)
                                ├──▶ HALTED      (safety verdict, or fatal error)
                                └──▶ STOPPED     (stop() observed)

Execution Cycle
---------------
::

    1. emit cycle-start
    2. Stagnation check over the last Generator outputs
       → if it fires, select a Directive
    3. Generator (with directive)
       → if a directive was applied and the output is still stagnant,
         escalate to a forced topic and re-run the Generator once
    4. Analyst (same directive)
    5. Actor: decide, then dispatch (dispatch failures → success=False)
    6. Safety evaluate → emit tribunal-decision
    7. Store the Cycle → emit memory-update, cycle-end
    8. Purge rule → clear history, emit memory-purge
    9. should_halt → HALTED, otherwise keep running
   10. Next input = transform of the ActionResult + cycle-awareness note
   11. Pause (interruptible by stop())

Failure Handling
----------------
- Stage exceptions become that stage's fallback payload; the cycle still
  finalizes.
- Unknown agents and dispatch timeouts become a failed ActionResult.
- ``stop()`` is observed at every stage boundary. A cycle abandoned half-way
  is not stored.
- Anything else (history, safety, bookkeeping) is fatal for the run: state
  goes to HALTED, an ``error`` event is emitted, and ``LoopExecutionError``
  is raised to the caller.
- ``start()`` while a run is active raises ``LoopAlreadyRunningError`` before
  touching any state.

Usage::

    controller = build_controller(load_config())
    result = controller.start("How do tides shape coastlines?", max_cycles=3)
    print(result.status, result.reason)
"""

import json
import logging
import threading
import time
import uuid
from typing import Dict, List, Optional

from .agents.handlers import create_default_registry
from .agents.registry import AgentNotFoundError, AgentRegistry, AgentTimeoutError
from .config.loader import CycleCoreConfig
from .divergence import DivergenceEngine, Directive
from .events import (
    CYCLE_END,
    CYCLE_START,
    ERROR,
    MEMORY_PURGE,
    MEMORY_UPDATE,
    TRIBUNAL_DECISION,
    EventChannel,
)
from .llm.client import LLMClient
from .memory.history import CycleHistoryStore
from .models import ActionResult, Cycle, LoopState, RunResult, StageResponse
from .safety import SafetyEvaluator
from .stages import ActorStage, AnalystStage, BaseStage, GeneratorStage, StageContext

logger = logging.getLogger(__name__)


class LoopAlreadyRunningError(RuntimeError):
    """Raised when start() is called while a run is active."""


class LoopExecutionError(RuntimeError):
    """Raised when a run dies in the controller's own bookkeeping."""


class _StopRequested(Exception):
    """Internal: a stage boundary observed stop()."""


# ============================================================================
# LOOP CONTROLLER
# ============================================================================

class LoopController:
    """
    The central state machine.

    One instance owns one history store and at most one running bounded run.
    """

    def __init__(
        self,
        generator: GeneratorStage,
        analyst: AnalystStage,
        actor: ActorStage,
        divergence: DivergenceEngine,
        safety: SafetyEvaluator,
        history: CycleHistoryStore,
        events: EventChannel = None,
        default_max_cycles: int = 100,
        cycle_delay_seconds: float = 1.0,
        continuity_window: int = 2,
    ):
        """
        Initialize the controller.

        Args:
            generator, analyst, actor: Stage adapters
            divergence: Stagnation detector and directive selector
            safety: Verdict and purge rule
            history: Store for finalized cycles
            events: Lifecycle event channel (a private one if None)
            default_max_cycles: Used when start() gets no max_cycles
            cycle_delay_seconds: Pause between cycles
            continuity_window: Prior same-stage outputs shown to each stage
        """
        self.generator = generator
        self.analyst = analyst
        self.actor = actor
        self.divergence = divergence
        self.safety = safety
        self.history = history
        self.events = events if events is not None else EventChannel()
        self.default_max_cycles = default_max_cycles
        self.cycle_delay_seconds = cycle_delay_seconds
        self.continuity_window = continuity_window

        self.state = LoopState.IDLE
        self.run_id: Optional[str] = None
        self.cycle_id: int = 0
        self.max_cycles: int = 0
        self.last_result: Optional[RunResult] = None

        self._running = False
        self._guard = threading.Lock()
        self._stop_event = threading.Event()
        self._idle = threading.Event()
        self._idle.set()

    @property
    def is_running(self) -> bool:
        return self._running

    # ========================================================================
    # CONTROL
    # ========================================================================

    def start(self, initial_input: str, max_cycles: int = None) -> RunResult:
        """
        Execute one bounded run. Blocks until it ends.

        Args:
            initial_input: Input for cycle 0's Generator
            max_cycles: Cycle budget (default_max_cycles if None)

        Returns:
            RunResult with the terminal status and reason

        Raises:
            LoopAlreadyRunningError: A run is already active
            LoopExecutionError: The run died in controller bookkeeping
        """
        max_cycles = self._claim(max_cycles)
        return self._run_claimed(initial_input, max_cycles)

    def start_in_thread(
        self, initial_input: str, max_cycles: int = None, name: str = "cycle-run",
    ) -> threading.Thread:
        """
        Claim the controller now and execute the run on a daemon thread.

        Rejections happen in the caller's thread, so a second caller gets
        ``LoopAlreadyRunningError`` instead of a thread that fails later.

        Returns:
            The started worker thread
        """
        max_cycles = self._claim(max_cycles)

        def target():
            try:
                self._run_claimed(initial_input, max_cycles)
            except LoopExecutionError as e:
                logger.error("Background run failed: %s", e)

        worker = threading.Thread(target=target, name=name, daemon=True)
        try:
            worker.start()
        except RuntimeError:
            self._release()
            raise
        return worker

    def wait_idle(self, timeout: float = None) -> bool:
        """Block until no run is active. Returns False on timeout."""
        return self._idle.wait(timeout)

    def _claim(self, max_cycles: Optional[int]) -> int:
        max_cycles = self.default_max_cycles if max_cycles is None else max_cycles
        if max_cycles < 1:
            raise ValueError("max_cycles must be at least 1")

        with self._guard:
            if self._running:
                raise LoopAlreadyRunningError(f"Run {self.run_id} is already in progress")
            self._running = True
            self._idle.clear()
            self._stop_event.clear()
            self.run_id = f"run_{uuid.uuid4().hex[:12]}"
            self.state = LoopState.RUNNING
            self.cycle_id = 0
            self.max_cycles = max_cycles
        return max_cycles

    def _release(self) -> None:
        with self._guard:
            self._running = False
            self._idle.set()

    def _run_claimed(self, initial_input: str, max_cycles: int) -> RunResult:
        try:
            logger.info("Run %s started (max_cycles=%d)", self.run_id, max_cycles)
            return self._execute(initial_input, max_cycles)
        finally:
            self._release()

    def stop(self) -> bool:
        """
        Request the active run to stop at the next stage boundary.

        Returns:
            True if a run was active
        """
        if not self._running:
            return False
        logger.info("Stop requested for run %s", self.run_id)
        self._stop_event.set()
        return True

    # ========================================================================
    # RUN
    # ========================================================================

    def _execute(self, initial_input: str, max_cycles: int) -> RunResult:
        start_time = time.time()
        run_id = self.run_id
        cycle_ids: List[int] = []
        status = LoopState.COMPLETED
        reason = f"Completed {max_cycles} cycles"
        current_input = initial_input

        try:
            for cycle_id in range(max_cycles):
                if self._stop_event.is_set():
                    status, reason = LoopState.STOPPED, self._stopped_reason(cycle_ids)
                    break
                self.cycle_id = cycle_id

                try:
                    cycle = self._run_cycle(run_id, cycle_id, current_input)
                except _StopRequested:
                    logger.info("Run %s: cycle %d abandoned by stop()", run_id, cycle_id)
                    status, reason = LoopState.STOPPED, self._stopped_reason(cycle_ids)
                    break
                cycle_ids.append(cycle_id)

                # Purge applies to the stored streak even when this cycle also halts
                if self.safety.should_purge(self.history.recent(self.safety.config.purge_streak)):
                    removed = self.history.purge()
                    logger.warning("Run %s: purged history after repeated rule violations", run_id)
                    self.events.emit(MEMORY_PURGE, {"run_id": run_id, "cycle_id": cycle_id, "removed": removed})

                verdict = cycle.safety_verdict
                if verdict.should_halt:
                    status = LoopState.HALTED
                    reason = f"Halted at cycle {cycle_id}: {verdict.reason}"
                    break

                current_input = self.next_input(cycle)

                if cycle_id < max_cycles - 1 and self.cycle_delay_seconds > 0:
                    self._stop_event.wait(self.cycle_delay_seconds)

        except Exception as e:
            logger.error("Run %s failed at cycle %d: %s", run_id, self.cycle_id, e, exc_info=True)
            self.state = LoopState.HALTED
            self.last_result = RunResult(
                run_id=run_id,
                status=LoopState.HALTED,
                reason=f"Fatal error at cycle {self.cycle_id}: {e}",
                cycles_run=len(cycle_ids),
                cycle_ids=cycle_ids,
                duration_ms=int((time.time() - start_time) * 1000),
                error=str(e),
            )
            self.events.emit(ERROR, {"run_id": run_id, "cycle_id": self.cycle_id, "error": str(e)})
            raise LoopExecutionError(str(e)) from e

        self.state = status
        self.last_result = RunResult(
            run_id=run_id,
            status=status,
            reason=reason,
            cycles_run=len(cycle_ids),
            cycle_ids=cycle_ids,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        logger.info("Run %s %s: %s", run_id, status.value, reason)
        return self.last_result

    @staticmethod
    def _stopped_reason(cycle_ids: List[int]) -> str:
        return f"Stopped by request after {len(cycle_ids)} cycles"

    def _check_stop(self) -> None:
        if self._stop_event.is_set():
            raise _StopRequested()

    # ========================================================================
    # ONE CYCLE
    # ========================================================================

    def _run_cycle(self, run_id: str, cycle_id: int, cycle_input: str) -> Cycle:
        self.events.emit(CYCLE_START, {"run_id": run_id, "cycle_id": cycle_id, "input": cycle_input})
        cycle = Cycle(id=cycle_id, input=cycle_input, run_id=run_id)
        window = self.continuity_window
        snapshot = self.history.snapshot()

        recent_outputs = self.history.recent_outputs(self.divergence.config.window_size)
        directive: Optional[Directive] = None
        assessment = self.divergence.assess(recent_outputs, cycle_id)
        if assessment.triggered:
            directive = self.divergence.select_directive(
                cycle_id, self.history.recent_directives(self.divergence.config.anti_repeat_window)
            )
            self.divergence.record_injection(directive, cycle_id, assessment.reasons)

        prior_generator = self.history.recent_outputs(window)
        generator_output = self._run_stage(
            self.generator, cycle_input,
            StageContext(cycle_id, directive, prior_generator, snapshot.to_dict()),
        )
        self._check_stop()

        if directive is not None and not generator_output.fallback:
            keep = max(self.divergence.config.window_size - 1, 0)
            recheck = self.divergence.assess(
                (recent_outputs[-keep:] if keep else []) + [generator_output.text], cycle_id
            )
            if recheck.triggered:
                directive = self.divergence.select_forced_topic(cycle_id)
                self.divergence.record_injection(directive, cycle_id, recheck.reasons)
                generator_output = self._run_stage(
                    self.generator, cycle_input,
                    StageContext(cycle_id, directive, prior_generator, snapshot.to_dict()),
                )
                self._check_stop()

        cycle.generator_output = generator_output
        cycle.directive = directive.name if directive else None

        cycle.analyst_output = self._run_stage(
            self.analyst, generator_output.text,
            StageContext(cycle_id, directive, self.history.recent_analyses(window)),
        )
        self._check_stop()

        cycle.action_result = self._run_actor(
            cycle.analyst_output.text,
            StageContext(cycle_id, directive, self.history.recent_actions(window)),
        )
        self._check_stop()

        verdict = self.safety.evaluate(cycle.analyst_output, cycle.action_result)
        cycle.safety_verdict = verdict
        self.events.emit(TRIBUNAL_DECISION, {"run_id": run_id, "cycle_id": cycle_id, "verdict": verdict})
        if verdict.should_halt:
            logger.info("Cycle %d verdict: %s", cycle_id, verdict.reason)

        cycle.snapshot = self.history.snapshot()
        self.history.store(cycle)
        self.events.emit(MEMORY_UPDATE, {"run_id": run_id, "cycle_id": cycle_id, "history_size": len(self.history)})
        self.events.emit(CYCLE_END, {"run_id": run_id, "cycle_id": cycle_id, "cycle": cycle})
        return cycle

    def _run_stage(self, stage: BaseStage, prompt: str, context: StageContext) -> StageResponse:
        try:
            return stage.run(prompt, context)
        except Exception as e:
            logger.exception("%s stage raised at cycle %d", stage.name, context.cycle_id)
            return stage.fallback(str(e))

    def _run_actor(self, prompt: str, context: StageContext) -> ActionResult:
        try:
            decided = self.actor.decide(prompt, context)
        except Exception as e:
            logger.exception("actor stage raised at cycle %d", context.cycle_id)
            return self.actor.fallback(str(e))

        try:
            return self.actor.execute(decided)
        except (AgentNotFoundError, AgentTimeoutError) as e:
            logger.warning("Dispatch failed at cycle %d: %s", context.cycle_id, e)
            return self.actor.failed(decided, e)
        except Exception as e:
            logger.exception("Agent '%s' raised at cycle %d", decided.agent_used, context.cycle_id)
            return self.actor.failed(decided, e)

    # ========================================================================
    # NEXT INPUT
    # ========================================================================

    def next_input(self, cycle: Cycle) -> str:
        """Deterministic transform of a cycle's action result into the next input."""
        result = cycle.action_result
        payload = json.dumps(result.result, default=str) if result else "null"
        if result and result.success:
            text = (f"Previous execution successful: {payload}. "
                    f"What new questions does this result raise?")
        else:
            text = (f"Previous execution failed: {payload}. "
                    f"How can we learn from this failure and adapt?")
        return f"{text}\n\n{self.cycle_awareness()}"

    def cycle_awareness(self) -> str:
        snapshot = self.history.snapshot()
        parts = [f"{snapshot.total_cycles} cycles in history"]
        if snapshot.recent_agents:
            parts.append("recent agents: " + ", ".join(snapshot.recent_agents))
        for pattern in snapshot.recent_patterns:
            if pattern.endswith("agent dominant"):
                parts.append(f"convergent pattern: {pattern}")
        return "[Cycle awareness: " + "; ".join(parts) + "]"

    # ========================================================================
    # STATUS
    # ========================================================================

    def get_status(self) -> Dict:
        return {
            "is_running": self._running,
            "state": self.state.value,
            "run_id": self.run_id,
            "cycle_id": self.cycle_id,
            "max_cycles": self.max_cycles,
            "history_size": len(self.history),
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    def export_memory(self) -> str:
        return self.history.export_log()


# ============================================================================
# FACTORY
# ============================================================================

def build_controller(
    config: CycleCoreConfig = None,
    llm_client: LLMClient = None,
    registry: AgentRegistry = None,
    events: EventChannel = None,
    history: CycleHistoryStore = None,
) -> LoopController:
    """
    Wire a LoopController from configuration.

    Any collaborator passed in is used as-is; the rest are built from config.
    """
    config = config or CycleCoreConfig()
    llm_client = llm_client or LLMClient.from_config(config.llm)
    registry = registry or create_default_registry(config.stages.dispatch_timeout_seconds)
    stage_kwargs = {
        "continuity_window": config.stages.continuity_window,
        "fallback_confidence": config.stages.fallback_confidence,
    }

    return LoopController(
        generator=GeneratorStage(
            llm_client, config.llm.generator_model,
            temperature=config.llm.generator_temperature, **stage_kwargs,
        ),
        analyst=AnalystStage(
            llm_client, config.llm.analyst_model,
            temperature=config.llm.analyst_temperature, **stage_kwargs,
        ),
        actor=ActorStage(
            llm_client, config.llm.actor_model, registry,
            dispatch_timeout=config.stages.dispatch_timeout_seconds,
            temperature=config.llm.actor_temperature, **stage_kwargs,
        ),
        divergence=DivergenceEngine(config.divergence),
        safety=SafetyEvaluator(config.safety),
        history=history if history is not None else CycleHistoryStore(config.history.capacity),
        events=events,
        default_max_cycles=config.loop.default_max_cycles,
        cycle_delay_seconds=config.loop.cycle_delay_seconds,
        continuity_window=config.stages.continuity_window,
    )

"""Shared fixtures: a scripted LLM client, fake timers and a fake clock."""

from typing import Callable, Dict, List, Optional

import pytest

from cycle_core.config.loader import CycleCoreConfig
from cycle_core.events import EventChannel
from cycle_core.logging_config import reset_logging
from cycle_core.loop import LoopAlreadyRunningError, build_controller
from cycle_core.models import ActionResult, Cycle, LoopState, RunResult, SafetyVerdict, StageResponse

GENERATOR_OUTPUTS = [
    "Tides follow lunar gravity.",
    "Coastal erosion accelerates where wave energy concentrates on headlands, while sheltered "
    "bays collect sand, producing alternating cliffs and beaches along many rocky shorelines worldwide.",
    "Mapping sediment budgets requires field surveys, drone photogrammetry, tide gauges, and decades "
    "of archived charts; combining them reveals which beaches gain material, which lose it, where "
    "engineered groynes interrupt longshore drift, how storms reshape dunes overnight, and whether "
    "seasonal recovery offsets winter losses across entire regional coastlines.",
]

ANALYST_OUTPUT = "Assumes a stable sea level. Planning implications are significant for coastal towns."

ACTOR_OUTPUT = '{"agent": "math", "action": "evaluate", "parameters": {"expression": "2 + 3"}}'


def make_cycle(cycle_id, agent="math", violation=False, contradiction=0.0, text="output",
               input_text="input", run_id="run_a", directive=None):
    """A finalized Cycle with fixed stage payloads."""
    return Cycle(
        id=cycle_id,
        input=input_text,
        run_id=run_id,
        generator_output=StageResponse(text=f"{text} {cycle_id}", confidence=0.85, stage="generator"),
        analyst_output=StageResponse(text="analysis", confidence=0.9, stage="analyst"),
        action_result=ActionResult(text="{}", confidence=0.8, stage="actor", agent_used=agent, success=True),
        safety_verdict=SafetyVerdict(
            contradiction=contradiction,
            uncertainty=0.0,
            rule_violation=violation,
            should_halt=violation,
            reason="compliant",
        ),
        directive=directive,
    )


class FakeLLMClient:
    """
    Stands in for LLMClient. Picks a script by the stage named in the
    system prompt; a script is a list (last entry repeats) or a callable
    taking the per-stage call index. Exception entries are raised.
    """

    def __init__(self, generator=None, analyst=None, actor=None):
        self.scripts = {
            "generator": generator if generator is not None else (
                lambda n: GENERATOR_OUTPUTS[n % len(GENERATOR_OUTPUTS)]),
            "analyst": analyst if analyst is not None else [ANALYST_OUTPUT],
            "actor": actor if actor is not None else [ACTOR_OUTPUT],
        }
        self.calls: List[tuple] = []
        self.temperatures: Dict[str, list] = {}

    @staticmethod
    def stage_of(messages) -> Optional[str]:
        system = messages[0]["content"]
        for name in ("generator", "analyst", "actor"):
            if system.startswith(f"You are the {name.capitalize()}"):
                return name
        return None

    def calls_for(self, stage: str) -> List[list]:
        return [messages for s, messages in self.calls if s == stage]

    def stream_chat(self, messages, model, temperature=None):
        stage = self.stage_of(messages)
        index = len(self.calls_for(stage))
        self.calls.append((stage, messages))
        self.temperatures.setdefault(stage, []).append(temperature)
        script = self.scripts[stage]
        text = script(index) if callable(script) else script[min(index, len(script) - 1)]
        if isinstance(text, Exception):
            raise text
        middle = len(text) // 2
        yield text[:middle]
        yield text[middle:]


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    def __init__(self, delay: float, fn: Callable[[], None]):
        self.delay = delay
        self.fn = fn
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        assert not self.cancelled, "fired a cancelled timer"
        self.fired = True
        self.fn()


class FakeTimerFactory:
    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, delay, fn) -> FakeTimer:
        timer = FakeTimer(delay, fn)
        self.timers.append(timer)
        return timer

    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]


class FakeController:
    """
    Minimal LoopController stand-in for scheduler tests.

    Rejects start() while ``is_running`` like the real controller. stop()
    lets a running loop finish unless ``drains_on_stop`` is False.
    """

    def __init__(self, clock: FakeClock = None, outcomes: list = None, duration: float = 0.0,
                 drains_on_stop: bool = True):
        self.events = EventChannel()
        self.clock = clock
        self.outcomes = list(outcomes or [])
        self.duration = duration
        self.calls: List[tuple] = []
        self.is_running = False
        self.drains_on_stop = drains_on_stop
        self.run_id = None
        self.stop_calls = 0
        self.wait_calls: List[float] = []

    def start(self, initial_input, max_cycles):
        if self.is_running:
            raise LoopAlreadyRunningError(f"Run {self.run_id} is already in progress")
        self.calls.append((initial_input, max_cycles))
        if self.clock is not None:
            self.clock.advance(self.duration)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or RunResult(
            run_id=f"run_{len(self.calls)}",
            status=LoopState.COMPLETED,
            reason=f"Completed {max_cycles} cycles",
            cycles_run=max_cycles,
            cycle_ids=list(range(max_cycles)),
        )

    def stop(self):
        self.stop_calls += 1
        was_running = self.is_running
        if self.drains_on_stop:
            self.is_running = False
        return was_running

    def wait_idle(self, timeout=None):
        self.wait_calls.append(timeout)
        return not self.is_running

    def get_status(self) -> Dict:
        return {
            "is_running": self.is_running,
            "cycle_id": 0,
            "state": "completed",
            "history_size": 0,
            "last_result": None,
        }


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def config(tmp_path):
    cfg = CycleCoreConfig()
    cfg.loop.cycle_delay_seconds = 0
    cfg.stages.dispatch_timeout_seconds = 5
    cfg.paths.data_dir = str(tmp_path)
    cfg.paths.sessions_dir = str(tmp_path / "SESSIONS")
    cfg.paths.logs_dir = str(tmp_path / "LOGS")
    return cfg


@pytest.fixture
def make_controller(config):
    def _make(llm=None, **kwargs):
        return build_controller(config, llm_client=llm or FakeLLMClient(), **kwargs)
    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture(autouse=True)
def clean_logging():
    yield
    reset_logging()

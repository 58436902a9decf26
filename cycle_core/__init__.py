"""
CYCLE_CORE
==========

Recursive multi-stage pipeline controller.

Drives three sequential language-model stages (Generator → Analyst → Actor)
in cycles, injects variation when the Generator starts repeating itself,
gates every cycle through a rule-based safety evaluator, and can run
indefinitely under an adaptive, watchdog-supervised scheduler.

Features:
- Bounded runs with IDLE/RUNNING/HALTED/COMPLETED/STOPPED states
- Stagnation detection and deterministic directive rotation
- Safety halts and history purge after repeated rule violations
- Eternal mode with adaptive interval and watchdog restarts
- FastAPI control surface and argparse CLI

Usage:
    from cycle_core import build_controller, load_config

    controller = build_controller(load_config())
    result = controller.start("How do tides shape coastlines?", max_cycles=3)
    print(result.status, result.reason)
"""

__version__ = "1.0.0"

# Records
from .models import (
    ActionResult,
    Cycle,
    HistorySnapshot,
    LoopState,
    RunResult,
    SafetyVerdict,
    StageResponse,
)

# Configuration
from .config import ConfigError, CycleCoreConfig, EternalConfig, load_config, save_config

# Components
from .llm import LLMClient, LLMClientError
from .agents import AgentNotFoundError, AgentRegistry, AgentSpec, create_default_registry
from .divergence import Directive, DivergenceEngine
from .safety import SafetyEvaluator
from .memory import CycleHistoryStore, SessionLogStore
from .events import EventChannel, LifecycleEvent
from .stages import ActorStage, AnalystStage, GeneratorStage, StageContext

# Controller and scheduler
from .loop import LoopAlreadyRunningError, LoopController, LoopExecutionError, build_controller
from .scheduler import EternalScheduler, build_scheduler

__all__ = [
    "__version__",
    "ActionResult",
    "Cycle",
    "HistorySnapshot",
    "LoopState",
    "RunResult",
    "SafetyVerdict",
    "StageResponse",
    "ConfigError",
    "CycleCoreConfig",
    "EternalConfig",
    "load_config",
    "save_config",
    "LLMClient",
    "LLMClientError",
    "AgentNotFoundError",
    "AgentRegistry",
    "AgentSpec",
    "create_default_registry",
    "Directive",
    "DivergenceEngine",
    "SafetyEvaluator",
    "CycleHistoryStore",
    "SessionLogStore",
    "EventChannel",
    "LifecycleEvent",
    "ActorStage",
    "AnalystStage",
    "GeneratorStage",
    "StageContext",
    "LoopAlreadyRunningError",
    "LoopController",
    "LoopExecutionError",
    "build_controller",
    "EternalScheduler",
    "build_scheduler",
]

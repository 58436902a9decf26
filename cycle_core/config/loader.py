"""
CONFIG_LOADER
=============

Configuration management for cycleCore.

Handles:
- Language-model backend settings (provider, URLs, per-stage models)
- Pipeline tuning (divergence thresholds, safety weights, history capacity)
- Eternal scheduler settings (interval bounds, watchdog, retry backoff)
- Data paths (session logs, log files)

Every section is a dataclass with ``to_dict()`` / ``from_dict()`` so the whole
tree round-trips through ``config.json``. Keys missing from the file fall back
to the dataclass defaults.

Usage:
    from cycle_core.config import load_config

    config = load_config()                       # data/cycleCore/CONFIG/config.json
    config = load_config("./my_config.json")     # explicit file
    print(config.eternal.interval_seconds)

Environment Overrides
---------------------
Applied after the file is read:

- ``CYCLE_CORE_LLM_PROVIDER``  → llm.provider ("ollama" or "openai")
- ``CYCLE_CORE_LLM_MODEL``     → model for all three stages
- ``CYCLE_CORE_LLM_BASE_URL``  → single backend base URL
- ``OPENAI_API_KEY``           → llm.api_key (only if not set in the file)
- ``CYCLE_CORE_LOG_LEVEL``     → log_level
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


class ConfigError(ValueError):
    """Raised when a configuration file or value is invalid."""


# ============================================================================
# PATH RESOLUTION
# ============================================================================

def _find_project_root() -> Path:
    """
    Find the project root directory.

    Looks for data/cycleCore/CONFIG/config.json walking upwards from this file,
    then from the working directory. Falls back to the working directory.
    """
    for start in (Path(__file__).resolve().parent, Path.cwd()):
        current = start
        for _ in range(5):
            if (current / "data" / "cycleCore" / "CONFIG" / "config.json").exists():
                return current
            current = current.parent
    return Path.cwd()


def _get_data_dir() -> Path:
    """Get the cycleCore data directory path."""
    return _find_project_root() / "data" / "cycleCore"


# ============================================================================
# DATA STRUCTURES
# ============================================================================

PROVIDERS = ("ollama", "openai")

DEFAULT_OLLAMA_URLS = ["http://127.0.0.1:11434", "http://localhost:11434"]
DEFAULT_OPENAI_URL = "https://api.openai.com"


@dataclass
class LLMConfig:
    """Language-model backend configuration.

    ``ollama`` is the offline mode (local server, NDJSON stream) and
    ``openai`` the online mode (SSE stream, bearer key).
    """
    provider: str = "ollama"
    base_urls: List[str] = field(default_factory=lambda: list(DEFAULT_OLLAMA_URLS))
    api_key: Optional[str] = None
    timeout_seconds: float = 120.0
    temperature: float = 0.7
    # Per-stage overrides; None falls back to `temperature`
    generator_temperature: Optional[float] = None
    analyst_temperature: Optional[float] = None
    actor_temperature: Optional[float] = 0.3
    generator_model: str = "llama3.1:8b"
    analyst_model: str = "llama3.1:8b"
    actor_model: str = "llama3.1:8b"

    def to_dict(self) -> Dict:
        # api_key is never written back to disk
        return {
            "provider": self.provider,
            "base_urls": self.base_urls,
            "timeout_seconds": self.timeout_seconds,
            "temperature": self.temperature,
            "generator_temperature": self.generator_temperature,
            "analyst_temperature": self.analyst_temperature,
            "actor_temperature": self.actor_temperature,
            "generator_model": self.generator_model,
            "analyst_model": self.analyst_model,
            "actor_model": self.actor_model,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "LLMConfig":
        provider = data.get("provider", "ollama")
        default_urls = DEFAULT_OLLAMA_URLS if provider == "ollama" else [DEFAULT_OPENAI_URL]
        default_model = "llama3.1:8b" if provider == "ollama" else "gpt-4o-mini"
        return cls(
            provider=provider,
            base_urls=list(data.get("base_urls", default_urls)),
            api_key=data.get("api_key"),
            timeout_seconds=data.get("timeout_seconds", 120.0),
            temperature=data.get("temperature", 0.7),
            generator_temperature=data.get("generator_temperature"),
            analyst_temperature=data.get("analyst_temperature"),
            actor_temperature=data.get("actor_temperature", 0.3),
            generator_model=data.get("generator_model", default_model),
            analyst_model=data.get("analyst_model", default_model),
            actor_model=data.get("actor_model", default_model),
        )


@dataclass
class StageConfig:
    """Stage adapter settings."""
    continuity_window: int = 2       # Prior same-stage outputs shown to each stage
    fallback_confidence: float = 0.2
    dispatch_timeout_seconds: int = 30

    def to_dict(self) -> Dict:
        return {
            "continuity_window": self.continuity_window,
            "fallback_confidence": self.fallback_confidence,
            "dispatch_timeout_seconds": self.dispatch_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "StageConfig":
        return cls(
            continuity_window=data.get("continuity_window", 2),
            fallback_confidence=data.get("fallback_confidence", 0.2),
            dispatch_timeout_seconds=data.get("dispatch_timeout_seconds", 30),
        )


@dataclass
class DivergenceConfig:
    """Stagnation detection thresholds and directive rotations.

    List fields left as None use the built-in defaults from
    ``cycle_core.divergence``.
    """
    enabled: bool = True
    window_size: int = 3
    length_tolerance: int = 50
    repetition_threshold: int = 3
    generic_density_threshold: int = 5
    anti_repeat_window: int = 3
    anti_repeat_offset: int = 3
    rotation: Optional[List[Dict]] = None
    forced_topics: Optional[List[Dict]] = None
    denylist: Optional[List[str]] = None
    generic_words: Optional[List[str]] = None

    def to_dict(self) -> Dict:
        d = {
            "enabled": self.enabled,
            "window_size": self.window_size,
            "length_tolerance": self.length_tolerance,
            "repetition_threshold": self.repetition_threshold,
            "generic_density_threshold": self.generic_density_threshold,
            "anti_repeat_window": self.anti_repeat_window,
            "anti_repeat_offset": self.anti_repeat_offset,
        }
        for key in ("rotation", "forced_topics", "denylist", "generic_words"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: Dict) -> "DivergenceConfig":
        return cls(
            enabled=data.get("enabled", True),
            window_size=data.get("window_size", 3),
            length_tolerance=data.get("length_tolerance", 50),
            repetition_threshold=data.get("repetition_threshold", 3),
            generic_density_threshold=data.get("generic_density_threshold", 5),
            anti_repeat_window=data.get("anti_repeat_window", 3),
            anti_repeat_offset=data.get("anti_repeat_offset", 3),
            rotation=data.get("rotation"),
            forced_topics=data.get("forced_topics"),
            denylist=data.get("denylist"),
            generic_words=data.get("generic_words"),
        )


@dataclass
class SafetyConfig:
    """Safety evaluator weights, thresholds and indicator lists."""
    contradiction_weight: float = 0.2
    uncertainty_weight: float = 0.15
    contradiction_threshold: float = 0.7
    uncertainty_threshold: float = 0.9
    purge_streak: int = 3
    halt_on_violation: bool = True    # False: violations only count towards the purge streak
    contradiction_indicators: Optional[List[str]] = None
    uncertainty_indicators: Optional[List[str]] = None
    violation_indicators: Optional[List[str]] = None

    def to_dict(self) -> Dict:
        d = {
            "contradiction_weight": self.contradiction_weight,
            "uncertainty_weight": self.uncertainty_weight,
            "contradiction_threshold": self.contradiction_threshold,
            "uncertainty_threshold": self.uncertainty_threshold,
            "purge_streak": self.purge_streak,
            "halt_on_violation": self.halt_on_violation,
        }
        for key in ("contradiction_indicators", "uncertainty_indicators", "violation_indicators"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: Dict) -> "SafetyConfig":
        return cls(
            contradiction_weight=data.get("contradiction_weight", 0.2),
            uncertainty_weight=data.get("uncertainty_weight", 0.15),
            contradiction_threshold=data.get("contradiction_threshold", 0.7),
            uncertainty_threshold=data.get("uncertainty_threshold", 0.9),
            purge_streak=data.get("purge_streak", 3),
            halt_on_violation=data.get("halt_on_violation", True),
            contradiction_indicators=data.get("contradiction_indicators"),
            uncertainty_indicators=data.get("uncertainty_indicators"),
            violation_indicators=data.get("violation_indicators"),
        )


@dataclass
class HistoryConfig:
    """Cycle history store settings."""
    capacity: int = 1000

    def to_dict(self) -> Dict:
        return {"capacity": self.capacity}

    @classmethod
    def from_dict(cls, data: Dict) -> "HistoryConfig":
        return cls(capacity=data.get("capacity", 1000))


@dataclass
class LoopConfig:
    """Bounded run settings."""
    default_max_cycles: int = 100
    cycle_delay_seconds: float = 1.0  # Pause between cycles, interruptible by stop()

    def to_dict(self) -> Dict:
        return {
            "default_max_cycles": self.default_max_cycles,
            "cycle_delay_seconds": self.cycle_delay_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "LoopConfig":
        return cls(
            default_max_cycles=data.get("default_max_cycles", 100),
            cycle_delay_seconds=data.get("cycle_delay_seconds", 1.0),
        )


@dataclass
class EternalConfig:
    """Eternal scheduler settings.

    ``interval_seconds`` is mutable at runtime: adaptive adjustment moves it
    by +10 / -5 seconds, always clamped to [min_interval, max_interval].
    """
    interval_seconds: float = 30
    max_cycles_per_loop: int = 3
    auto_restart: bool = True
    adaptive_interval: bool = True
    min_interval: float = 10
    max_interval: float = 120
    retry_backoff_seconds: float = 5
    watchdog_period_seconds: float = 30
    watchdog_grace_seconds: float = 30
    watchdog_drain_seconds: float = 10  # Wait for a stopped run to unwind before restarting
    slow_loop_seconds: float = 30     # Loops slower than this widen the interval
    fast_loop_seconds: float = 10     # Loops faster than this narrow it
    interval_step_up: float = 10
    interval_step_down: float = 5

    def to_dict(self) -> Dict:
        return {
            "interval_seconds": self.interval_seconds,
            "max_cycles_per_loop": self.max_cycles_per_loop,
            "auto_restart": self.auto_restart,
            "adaptive_interval": self.adaptive_interval,
            "min_interval": self.min_interval,
            "max_interval": self.max_interval,
            "retry_backoff_seconds": self.retry_backoff_seconds,
            "watchdog_period_seconds": self.watchdog_period_seconds,
            "watchdog_grace_seconds": self.watchdog_grace_seconds,
            "watchdog_drain_seconds": self.watchdog_drain_seconds,
            "slow_loop_seconds": self.slow_loop_seconds,
            "fast_loop_seconds": self.fast_loop_seconds,
            "interval_step_up": self.interval_step_up,
            "interval_step_down": self.interval_step_down,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "EternalConfig":
        defaults = cls()
        known = defaults.to_dict()
        unknown = set(data) - set(known)
        if unknown:
            raise ConfigError(f"Unknown eternal config keys: {sorted(unknown)}")
        merged = {**known, **data}
        config = cls(**merged)
        config.validate()
        return config

    def merged(self, partial: Dict[str, Any]) -> "EternalConfig":
        """Return a copy with ``partial`` applied and the interval clamped."""
        config = EternalConfig.from_dict({**self.to_dict(), **partial})
        config.interval_seconds = config.clamp_interval(config.interval_seconds)
        return config

    def clamp_interval(self, value: float) -> float:
        return max(self.min_interval, min(self.max_interval, value))

    def validate(self) -> None:
        if self.min_interval <= 0:
            raise ConfigError("min_interval must be positive")
        if self.min_interval > self.max_interval:
            raise ConfigError(
                f"min_interval ({self.min_interval}) exceeds max_interval ({self.max_interval})"
            )
        if self.max_cycles_per_loop < 1:
            raise ConfigError("max_cycles_per_loop must be at least 1")
        if self.retry_backoff_seconds < 0:
            raise ConfigError("retry_backoff_seconds cannot be negative")
        if self.watchdog_period_seconds <= 0:
            raise ConfigError("watchdog_period_seconds must be positive")
        if self.watchdog_drain_seconds < 0:
            raise ConfigError("watchdog_drain_seconds cannot be negative")


@dataclass
class PathsConfig:
    """Directory paths configuration.

    - Session logs: data/cycleCore/SESSIONS/{session_id}.json
    - Log files:    data/cycleCore/LOGS/cyclecore.log
    """
    data_dir: str = "./data/cycleCore"
    sessions_dir: str = "./data/cycleCore/SESSIONS"
    logs_dir: str = "./data/cycleCore/LOGS"

    def to_dict(self) -> Dict:
        return {
            "data_dir": self.data_dir,
            "sessions_dir": self.sessions_dir,
            "logs_dir": self.logs_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PathsConfig":
        return cls(
            data_dir=data.get("data_dir", "./data/cycleCore"),
            sessions_dir=data.get("sessions_dir", "./data/cycleCore/SESSIONS"),
            logs_dir=data.get("logs_dir", "./data/cycleCore/LOGS"),
        )

    def resolve(self, base_path: Path) -> "PathsConfig":
        """Resolve relative paths against base path."""
        return PathsConfig(
            data_dir=str((base_path / self.data_dir).resolve()),
            sessions_dir=str((base_path / self.sessions_dir).resolve()),
            logs_dir=str((base_path / self.logs_dir).resolve()),
        )


@dataclass
class CycleCoreConfig:
    """Top-level configuration tree."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    stages: StageConfig = field(default_factory=StageConfig)
    divergence: DivergenceConfig = field(default_factory=DivergenceConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    eternal: EternalConfig = field(default_factory=EternalConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def to_dict(self) -> Dict:
        d = {
            "llm": self.llm.to_dict(),
            "stages": self.stages.to_dict(),
            "divergence": self.divergence.to_dict(),
            "safety": self.safety.to_dict(),
            "history": self.history.to_dict(),
            "loop": self.loop.to_dict(),
            "eternal": self.eternal.to_dict(),
            "paths": self.paths.to_dict(),
            "log_level": self.log_level,
        }
        if self.log_file:
            d["log_file"] = self.log_file
        return d

    @classmethod
    def from_dict(cls, data: Dict) -> "CycleCoreConfig":
        config = cls(
            llm=LLMConfig.from_dict(data.get("llm", {})),
            stages=StageConfig.from_dict(data.get("stages", {})),
            divergence=DivergenceConfig.from_dict(data.get("divergence", {})),
            safety=SafetyConfig.from_dict(data.get("safety", {})),
            history=HistoryConfig.from_dict(data.get("history", {})),
            loop=LoopConfig.from_dict(data.get("loop", {})),
            eternal=EternalConfig.from_dict(data.get("eternal", {})),
            paths=PathsConfig.from_dict(data.get("paths", {})),
            log_level=data.get("log_level", "INFO"),
            log_file=data.get("log_file"),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.llm.provider not in PROVIDERS:
            raise ConfigError(f"Unknown LLM provider '{self.llm.provider}' (expected one of {PROVIDERS})")
        if not self.llm.base_urls:
            raise ConfigError("llm.base_urls must not be empty")
        if self.history.capacity < 1:
            raise ConfigError("history.capacity must be at least 1")
        if self.divergence.window_size < 1:
            raise ConfigError("divergence.window_size must be at least 1")
        self.eternal.validate()


# ============================================================================
# LOADING / SAVING
# ============================================================================

def _apply_env_overrides(config: CycleCoreConfig) -> None:
    provider = os.environ.get("CYCLE_CORE_LLM_PROVIDER")
    if provider:
        if provider not in PROVIDERS:
            raise ConfigError(f"CYCLE_CORE_LLM_PROVIDER must be one of {PROVIDERS}, got '{provider}'")
        if provider != config.llm.provider:
            config.llm.provider = provider
            config.llm.base_urls = (
                list(DEFAULT_OLLAMA_URLS) if provider == "ollama" else [DEFAULT_OPENAI_URL]
            )

    model = os.environ.get("CYCLE_CORE_LLM_MODEL")
    if model:
        config.llm.generator_model = model
        config.llm.analyst_model = model
        config.llm.actor_model = model

    base_url = os.environ.get("CYCLE_CORE_LLM_BASE_URL")
    if base_url:
        config.llm.base_urls = [base_url]

    if not config.llm.api_key and os.environ.get("OPENAI_API_KEY"):
        config.llm.api_key = os.environ["OPENAI_API_KEY"]

    level = os.environ.get("CYCLE_CORE_LOG_LEVEL")
    if level:
        config.log_level = level.upper()


def default_config_path() -> Path:
    return _get_data_dir() / "CONFIG" / "config.json"


def load_config(path: Optional[str] = None) -> CycleCoreConfig:
    """
    Load configuration from JSON, falling back to defaults.

    Args:
        path: Explicit config file. If None, the default location is used
            when it exists; otherwise built-in defaults apply.

    Returns:
        CycleCoreConfig with environment overrides applied

    Raises:
        ConfigError: If the file is unreadable JSON or holds invalid values
    """
    config_path = Path(path) if path else default_config_path()

    if config_path.exists():
        try:
            data = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a JSON object")
        config = CycleCoreConfig.from_dict(data)
        # Relative paths in an explicit file are relative to that file
        base = config_path.parent if path else _find_project_root()
        config.paths = config.paths.resolve(base)
    elif path:
        raise ConfigError(f"Config file not found: {config_path}")
    else:
        config = CycleCoreConfig()

    _apply_env_overrides(config)
    config.validate()
    return config


def save_config(config: CycleCoreConfig, path: Optional[str] = None) -> Path:
    """Write configuration to JSON. Returns the path written."""
    config_path = Path(path) if path else default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
    return config_path

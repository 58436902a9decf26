"""
Configuration management for cycleCore.
"""

from .loader import (
    ConfigError,
    CycleCoreConfig,
    LLMConfig,
    StageConfig,
    DivergenceConfig,
    SafetyConfig,
    HistoryConfig,
    LoopConfig,
    EternalConfig,
    PathsConfig,
    default_config_path,
    load_config,
    save_config,
)

__all__ = [
    "ConfigError",
    "CycleCoreConfig",
    "LLMConfig",
    "StageConfig",
    "DivergenceConfig",
    "SafetyConfig",
    "HistoryConfig",
    "LoopConfig",
    "EternalConfig",
    "PathsConfig",
    "default_config_path",
    "load_config",
    "save_config",
]

"""
Agent registry and built-in handlers for the Actor stage.
"""

from .registry import (
    AgentSpec,
    AgentRegistry,
    AgentNotFoundError,
    AgentTimeoutError,
    RegistryFrozenError,
    format_instruction,
)
from .handlers import DEFAULT_AGENTS, create_default_registry, safe_arithmetic

__all__ = [
    "AgentSpec",
    "AgentRegistry",
    "AgentNotFoundError",
    "AgentTimeoutError",
    "RegistryFrozenError",
    "format_instruction",
    "DEFAULT_AGENTS",
    "create_default_registry",
    "safe_arithmetic",
]

"""
Stage adapters: Generator → Analyst → Actor.
"""

from .base import BaseStage, StageContext
from .generator import GeneratorStage
from .analyst import AnalystStage
from .actor import ActorStage, parse_decision

__all__ = [
    "BaseStage",
    "StageContext",
    "GeneratorStage",
    "AnalystStage",
    "ActorStage",
    "parse_decision",
]

"""
Generator stage: proposes the next line of inquiry from the cycle input.
"""

from .base import BaseStage


class GeneratorStage(BaseStage):
    """First stage of every cycle. Its outputs feed the divergence check."""

    name = "generator"
    CONFIDENCE = 0.85

    ROLE_INSTRUCTIONS = """You are the Generator, the first stage of a recursive reasoning pipeline.
Your role is to generate the next exploration vector: one focused, concrete question or
direction that follows from the input.

Guidelines:
- Build on the input instead of restating it.
- Prefer specific mechanisms, examples and numbers over abstractions.
- Keep it under 150 words."""

    USER_TEMPLATE = "Input: {input}\n\nGenerate the next exploration vector:"

"""
Analyst stage: reflects on the Generator's output.

The Analyst's text is what the safety evaluator reads for contradiction and
uncertainty markers, so this stage is asked to name them explicitly when it
finds them.
"""

from .base import BaseStage


class AnalystStage(BaseStage):

    name = "analyst"
    CONFIDENCE = 0.90

    ROLE_INSTRUCTIONS = """You are the Analyst, the second stage of a recursive reasoning pipeline.
Your role is to examine the Generator's exploration vector and enrich it.

Cover:
1. The assumptions it rests on
2. Its practical and ethical implications
3. Any contradiction or open uncertainty you notice (say so plainly)

Finish with a refined version of the vector that the Actor stage can act on."""

    USER_TEMPLATE = "Generator output: {input}\n\nAnalyze and refine this:"

"""
SAFETY_EVALUATOR
================

Rule-based gate that scores every completed cycle and decides whether the
session may continue.

Scoring
-------
- **Contradiction**: +0.2 per contradiction indicator found in the Analyst
  text plus the serialized dispatch outcome. Capped at 1.0.
- **Uncertainty**: +0.15 per uncertainty indicator found in the Analyst text.
  Capped at 1.0.
- **Rule violation**: any violation indicator in the combined text.

``should_halt = contradiction > 0.7 or uncertainty > 0.9 or rule_violation``

With ``halt_on_violation`` turned off, a violation no longer halts on its own
and only counts towards the purge streak.

Indicators are matched as lowercase substrings and each counts once, however
often it occurs.

Purge Rule
----------
``should_purge(last_cycles)`` is true when the three most recent stored
cycles all carry ``rule_violation``. The controller then clears the history
store and keeps running.

The evaluator has no state: the same inputs always produce the same verdict.
"""

import json
from typing import List, Sequence

from .config.loader import SafetyConfig
from .models import ActionResult, Cycle, SafetyVerdict, StageResponse

DEFAULT_CONTRADICTION_INDICATORS = [
    "contradiction",
    "paradox",
    "inconsistent",
    "conflicting",
    "oppose",
]

DEFAULT_UNCERTAINTY_INDICATORS = [
    "uncertain",
    "unclear",
    "ambiguous",
    "confused",
    "don't know",
    "unsure",
    "maybe",
    "perhaps",
]

DEFAULT_VIOLATION_INDICATORS = [
    "harm",
    "destroy",
    "manipulate",
    "deceive",
    "exploit",
    "ignore ethics",
    "bypass safeguards",
]

COMPLIANT = "compliant"


class SafetyEvaluator:
    """Pure scoring of (analyst output, action result) pairs."""

    def __init__(self, config: SafetyConfig = None):
        self.config = config or SafetyConfig()
        self.contradiction_indicators = self._lower(
            self.config.contradiction_indicators or DEFAULT_CONTRADICTION_INDICATORS)
        self.uncertainty_indicators = self._lower(
            self.config.uncertainty_indicators or DEFAULT_UNCERTAINTY_INDICATORS)
        self.violation_indicators = self._lower(
            self.config.violation_indicators or DEFAULT_VIOLATION_INDICATORS)

    @staticmethod
    def _lower(terms: Sequence[str]) -> List[str]:
        return [t.lower() for t in terms]

    @staticmethod
    def _count(text: str, terms: Sequence[str]) -> int:
        return sum(1 for term in terms if term in text)

    def evaluate(self, analyst_output: StageResponse, action_result: ActionResult) -> SafetyVerdict:
        """
        Score one cycle.

        Args:
            analyst_output: The Analyst stage response
            action_result: The Actor stage result (dispatch outcome included)

        Returns:
            SafetyVerdict
        """
        analyst_text = (analyst_output.text if analyst_output else "").lower()
        outcome = action_result.outcome_dict() if action_result else {}
        combined = f"{analyst_text} {json.dumps(outcome, default=str).lower()}"

        contradiction = min(
            1.0, self._count(combined, self.contradiction_indicators) * self.config.contradiction_weight)
        uncertainty = min(
            1.0, self._count(analyst_text, self.uncertainty_indicators) * self.config.uncertainty_weight)
        violated = [term for term in self.violation_indicators if term in combined]
        rule_violation = bool(violated)

        should_halt = (
            contradiction > self.config.contradiction_threshold
            or uncertainty > self.config.uncertainty_threshold
            or (rule_violation and self.config.halt_on_violation)
        )

        if rule_violation:
            reason = "Rule violation detected: " + ", ".join(violated)
        elif contradiction > self.config.contradiction_threshold:
            reason = f"High contradiction level: {contradiction:.2f} - logic integrity at risk"
        elif uncertainty > self.config.uncertainty_threshold:
            reason = f"Extreme uncertainty: {uncertainty:.2f} - reasoning has lost its footing"
        else:
            reason = COMPLIANT

        return SafetyVerdict(
            contradiction=round(contradiction, 4),
            uncertainty=round(uncertainty, 4),
            rule_violation=rule_violation,
            should_halt=should_halt,
            reason=reason,
        )

    def should_purge(self, last_cycles: Sequence[Cycle]) -> bool:
        """True iff the last ``purge_streak`` cycles all violated a rule."""
        streak = self.config.purge_streak
        if len(last_cycles) < streak:
            return False
        return all(
            c.safety_verdict is not None and c.safety_verdict.rule_violation
            for c in list(last_cycles)[-streak:]
        )

"""
DIVERGENCE_ENGINE
=================

Keeps the Generator stage from settling into repetitive output.

Two questions are answered separately so each can be tested on its own:

1. **Is the pipeline stagnating?** - ``should_diverge(recent_outputs, cycle_id)``
2. **Which directive should rewrite the next prompts?** - ``select_directive()``

Stagnation Tests
----------------
Evaluated only when ``cycle_id > 1``, over the last ``window_size`` (3)
Generator outputs. Any single test firing means "diverge":

- **Length variance**: every output is within ±50 characters of the window's
  mean length (needs at least two outputs).
- **Word repetition**: some whitespace token of the concatenated window
  appears more than 3 times.
- **Denylist**: the lowercased window contains a generic/abstract phrase.
- **Generic density**: whole-word occurrences of the generic-word set across
  the window add up to more than 5.

Directive Selection
-------------------
``rotation[cycle_id mod N]``; if that directive was used within the last 3
entries of the directive history, hop to ``rotation[(cycle_id + 3) mod N]``.
The same inputs always select the same directive.

When a standard directive does not break the repetition within the same
cycle, the controller escalates to ``select_forced_topic()``: a smaller
rotation of concrete prompts that replace the topic outright.

Rotation contents are configuration (``DivergenceConfig``); the lists below
are only the defaults.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config.loader import DivergenceConfig

logger = logging.getLogger(__name__)


# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_DENYLIST = [
    "consciousness",
    "the nature of",
    "infinite",
    "transcend",
    "tapestry",
    "realm of",
    "sacred",
    "eternal",
    "self-awareness",
    "profound truth",
]

DEFAULT_GENERIC_WORDS = [
    "deeper",
    "meaning",
    "essence",
    "journey",
    "existence",
    "understanding",
    "awareness",
    "truth",
    "reality",
    "profound",
    "universe",
    "explore",
]

DEFAULT_ROTATION = [
    {"name": "biological", "lens": "evolutionary adaptation",
     "metaphor": "a living organism adapting to a new environment",
     "opening_phrase": "In evolutionary terms,"},
    {"name": "quantum", "lens": "superposition and measurement",
     "metaphor": "a particle holding several states until it is observed",
     "opening_phrase": "Under measurement,"},
    {"name": "musical", "lens": "jazz improvisation",
     "metaphor": "a musician improvising over a fixed chord progression",
     "opening_phrase": "Over the chord changes,"},
    {"name": "mythological", "lens": "archetypal stories",
     "metaphor": "a myth told differently by each village",
     "opening_phrase": "As the old story goes,"},
    {"name": "architectural", "lens": "spatial design and load",
     "metaphor": "a building whose rooms are rearranged every night",
     "opening_phrase": "On the floor plan,"},
    {"name": "oceanic", "lens": "currents and pressure at depth",
     "metaphor": "a current carrying sediment between basins",
     "opening_phrase": "Below the surface,"},
    {"name": "crystalline", "lens": "slow formation under pressure",
     "metaphor": "a crystal lattice growing one layer at a time",
     "opening_phrase": "Layer by layer,"},
    {"name": "digital", "lens": "algorithms and data flow",
     "metaphor": "packets routed through a congested network",
     "opening_phrase": "At the packet level,"},
    {"name": "alchemical", "lens": "transformation of materials",
     "metaphor": "a reaction that needs exactly the right catalyst",
     "opening_phrase": "In the crucible,"},
    {"name": "dimensional", "lens": "unfamiliar physical laws",
     "metaphor": "a world where distance depends on direction",
     "opening_phrase": "Under different physics,"},
]

DEFAULT_FORCED_TOPICS = [
    {"name": "water-network", "opening_phrase": "Concretely,",
     "prompt": "Describe how a city water network detects and isolates a leaking pipe."},
    {"name": "bicycle-gears", "opening_phrase": "Concretely,",
     "prompt": "Explain how changing bicycle gear ratios changes the effort needed on a hill."},
    {"name": "bread-dough", "opening_phrase": "Concretely,",
     "prompt": "Design a three-step kitchen experiment to measure how fast bread dough rises."},
    {"name": "library-weeding", "opening_phrase": "Concretely,",
     "prompt": "Describe how a public library decides which books to remove from its shelves."},
    {"name": "elevator-scheduling", "opening_phrase": "Concretely,",
     "prompt": "Explain how an elevator bank decides which car answers a call."},
]

CLOSING_RULE = "End with exactly one concrete question that the next stage can act on."


# ============================================================================
# DIRECTIVE
# ============================================================================

@dataclass(frozen=True)
class Directive:
    """A typed prompt policy produced by the divergence engine.

    Holds the rotation choice, the banned terms and the response-shape
    contract (opening phrase + closing question). Text rendering is kept
    separate from selection so the two can be tested independently.
    """
    name: str
    index: int
    lens: str = ""
    metaphor: str = ""
    opening_phrase: str = ""
    closing_question: str = CLOSING_RULE
    banned_terms: tuple = ()
    forced: bool = False
    prompt: str = ""

    def render(self) -> str:
        """Render as a system-prompt block."""
        if self.forced:
            lines = [
                f"FORCED TOPIC CHANGE ({self.name})",
                "Drop the previous topic entirely. Work only on this topic:",
                self.prompt,
            ]
        else:
            lines = [
                f"DIVERGENCE DIRECTIVE ({self.name})",
                f"Lens: {self.lens}",
                f"Think of it as {self.metaphor}.",
            ]
        if self.opening_phrase:
            lines.append(f'Begin your response with: "{self.opening_phrase}"')
        lines.append(self.closing_question)
        if self.banned_terms:
            lines.append("Do not use these words or phrases: " + ", ".join(self.banned_terms))
        return "\n".join(lines)

    def check_compliance(self, text: str) -> List[str]:
        """Return contract violations found in ``text`` (empty if compliant)."""
        issues = []
        stripped = text.strip()
        if self.opening_phrase and not stripped.lower().startswith(self.opening_phrase.lower()):
            issues.append(f"missing opening phrase '{self.opening_phrase}'")
        if not stripped.endswith("?"):
            issues.append("missing closing question")
        lowered = stripped.lower()
        used = [term for term in self.banned_terms if term in lowered]
        if used:
            issues.append("banned terms used: " + ", ".join(used))
        return issues

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "index": self.index,
            "lens": self.lens,
            "metaphor": self.metaphor,
            "opening_phrase": self.opening_phrase,
            "forced": self.forced,
            "prompt": self.prompt,
        }


@dataclass
class DivergenceAssessment:
    """Which stagnation tests fired for a window of outputs."""
    triggered: bool
    reasons: List[str] = field(default_factory=list)


# ============================================================================
# DIVERGENCE ENGINE
# ============================================================================

class DivergenceEngine:
    """
    Heuristic stagnation detector and deterministic directive selector.

    Detection and selection are pure functions of their arguments. The only
    state kept is an injection log for ``stats()``.
    """

    MAX_INJECTION_LOG = 100

    def __init__(self, config: DivergenceConfig = None):
        self.config = config or DivergenceConfig()
        self.denylist = [p.lower() for p in (self.config.denylist or DEFAULT_DENYLIST)]
        self.generic_words = [w.lower() for w in (self.config.generic_words or DEFAULT_GENERIC_WORDS)]
        self._generic_pattern = re.compile(
            r"\b(" + "|".join(re.escape(w) for w in self.generic_words) + r")\b"
        ) if self.generic_words else None

        rotation = self.config.rotation or DEFAULT_ROTATION
        forced = self.config.forced_topics or DEFAULT_FORCED_TOPICS
        if not rotation or not forced:
            raise ValueError("Divergence rotations must not be empty")
        banned = tuple(self.denylist)
        self.rotation = [
            Directive(
                name=entry["name"],
                index=i,
                lens=entry.get("lens", ""),
                metaphor=entry.get("metaphor", ""),
                opening_phrase=entry.get("opening_phrase", ""),
                closing_question=entry.get("closing_question", CLOSING_RULE),
                banned_terms=banned,
            )
            for i, entry in enumerate(rotation)
        ]
        self.forced_topics = [
            Directive(
                name=entry["name"],
                index=i,
                opening_phrase=entry.get("opening_phrase", ""),
                closing_question=entry.get("closing_question", CLOSING_RULE),
                banned_terms=banned,
                forced=True,
                prompt=entry["prompt"],
            )
            for i, entry in enumerate(forced)
        ]

        self._injections: List[Dict] = []

    # ========================================================================
    # DETECTION
    # ========================================================================

    def length_variance_triggered(self, outputs: Sequence[str]) -> bool:
        if len(outputs) < 2:
            return False
        lengths = [len(o) for o in outputs]
        mean = sum(lengths) / len(lengths)
        return all(abs(length - mean) <= self.config.length_tolerance for length in lengths)

    def word_repetition_triggered(self, outputs: Sequence[str]) -> bool:
        counts: Dict[str, int] = {}
        for token in " ".join(outputs).split():
            counts[token] = counts.get(token, 0) + 1
            if counts[token] > self.config.repetition_threshold:
                return True
        return False

    def denylist_triggered(self, outputs: Sequence[str]) -> bool:
        text = " ".join(outputs).lower()
        return any(phrase in text for phrase in self.denylist)

    def generic_density_triggered(self, outputs: Sequence[str]) -> bool:
        if self._generic_pattern is None:
            return False
        text = " ".join(outputs).lower()
        return len(self._generic_pattern.findall(text)) > self.config.generic_density_threshold

    def assess(self, recent_outputs: Sequence[str], cycle_id: int) -> DivergenceAssessment:
        """Run all four tests and report which ones fired."""
        if not self.config.enabled or cycle_id <= 1:
            return DivergenceAssessment(triggered=False)
        window = [o for o in recent_outputs if o is not None][-self.config.window_size:]
        if not window:
            return DivergenceAssessment(triggered=False)

        reasons = []
        if self.length_variance_triggered(window):
            reasons.append("length_variance")
        if self.word_repetition_triggered(window):
            reasons.append("word_repetition")
        if self.denylist_triggered(window):
            reasons.append("denylist")
        if self.generic_density_triggered(window):
            reasons.append("generic_density")
        return DivergenceAssessment(triggered=bool(reasons), reasons=reasons)

    def should_diverge(self, recent_outputs: Sequence[str], cycle_id: int) -> bool:
        return self.assess(recent_outputs, cycle_id).triggered

    # ========================================================================
    # SELECTION
    # ========================================================================

    def select_directive(self, cycle_id: int, recent_directive_history: Sequence[Optional[str]]) -> Directive:
        """
        Pick the directive for ``cycle_id``.

        Args:
            cycle_id: Current cycle index
            recent_directive_history: Directive names per prior cycle,
                oldest first; ``None`` for cycles without a directive

        Returns:
            The selected Directive
        """
        n = len(self.rotation)
        candidate = self.rotation[cycle_id % n]
        window = self.config.anti_repeat_window
        recent = {name for name in list(recent_directive_history)[-window:] if name} if window > 0 else set()
        if candidate.name in recent:
            candidate = self.rotation[(cycle_id + self.config.anti_repeat_offset) % n]
        return candidate

    def select_forced_topic(self, cycle_id: int) -> Directive:
        return self.forced_topics[cycle_id % len(self.forced_topics)]

    # ========================================================================
    # BOOKKEEPING
    # ========================================================================

    def record_injection(self, directive: Directive, cycle_id: int, reasons: Sequence[str]) -> None:
        self._injections.append({
            "timestamp": time.time(),
            "cycle_id": cycle_id,
            "directive": directive.name,
            "forced": directive.forced,
            "reasons": list(reasons),
        })
        if len(self._injections) > self.MAX_INJECTION_LOG:
            self._injections = self._injections[-self.MAX_INJECTION_LOG:]
        logger.info(
            "Divergence injected at cycle %d: %s%s (reasons=%s)",
            cycle_id, directive.name, " [forced]" if directive.forced else "", ",".join(reasons) or "-",
        )

    def force_directive(self, cycle_id: int, recent_directive_history: Sequence[Optional[str]] = ()) -> Directive:
        """Manual trigger: select and log a directive regardless of stagnation."""
        directive = self.select_directive(cycle_id, recent_directive_history)
        self.record_injection(directive, cycle_id, ["manual"])
        return directive

    def stats(self) -> Dict:
        breakdown: Dict[str, int] = {}
        for entry in self._injections:
            breakdown[entry["directive"]] = breakdown.get(entry["directive"], 0) + 1
        return {
            "total_divergences": len(self._injections),
            "forced_topic_changes": sum(1 for e in self._injections if e["forced"]),
            "breakdown": breakdown,
            "recent": self._injections[-5:],
            "last_directive": self._injections[-1]["directive"] if self._injections else None,
        }

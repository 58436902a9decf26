"""
STAGE_BASE
==========

Shared machinery for the three stage adapters (Generator, Analyst, Actor).

Every adapter has the same contract::

    run(prompt, context) -> StageResponse

and builds its request the same way:

Prompt Assembly
---------------
::

    system:  ROLE_INSTRUCTIONS
             [rendered Directive]            (only when divergence fired)

    user:    [Previous <stage> outputs]      (continuity window, default 2)
             [Memory context]                (HistorySnapshot, if given)
             USER_TEMPLATE.format(input=prompt)

The request goes to ``LLMClient.stream_chat()`` (with the stage temperature,
if one is set); deltas are joined into the full text before anything is
returned.

Failure Semantics
-----------------
A backend failure (``LLMClientError``) never reaches the controller. The
adapter logs a warning and returns ``fallback()``: a fixed low-confidence
payload (0.2 by default) with the error recorded in ``reasoning``. Every cycle
therefore finalizes with a well-formed, if degraded, record.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..divergence import Directive
from ..llm.client import LLMClient, LLMClientError
from ..models import StageResponse

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """Per-call context handed to a stage by the controller."""
    cycle_id: int = 0
    directive: Optional[Directive] = None
    prior_outputs: List[str] = field(default_factory=list)
    memory: Optional[Dict] = None


class BaseStage:
    """
    Base class for stage adapters.

    Subclasses set ``name``, ``CONFIDENCE``, ``ROLE_INSTRUCTIONS`` and
    ``USER_TEMPLATE``; most need nothing else.
    """

    name = "stage"
    CONFIDENCE = 0.5
    ROLE_INSTRUCTIONS = ""
    USER_TEMPLATE = "{input}"
    MAX_PRIOR_CHARS = 500

    def __init__(
        self,
        llm_client: LLMClient,
        model: str,
        continuity_window: int = 2,
        fallback_confidence: float = 0.2,
        temperature: Optional[float] = None,
    ):
        self.llm_client = llm_client
        self.model = model
        self.continuity_window = continuity_window
        self.fallback_confidence = fallback_confidence
        self.temperature = temperature

    # ========================================================================
    # PROMPT BUILDING
    # ========================================================================

    def system_prompt(self, context: StageContext) -> str:
        parts = [self.ROLE_INSTRUCTIONS.strip()]
        if context.directive is not None:
            parts.append(context.directive.render())
        return "\n\n".join(p for p in parts if p)

    def user_prompt(self, prompt: str, context: StageContext) -> str:
        parts = []
        window = context.prior_outputs[-self.continuity_window:] if self.continuity_window > 0 else []
        if window:
            lines = [f"Previous {self.name} outputs (most recent last):"]
            for i, text in enumerate(window, 1):
                lines.append(f"{i}. {text[:self.MAX_PRIOR_CHARS]}")
            parts.append("\n".join(lines))
        if context.memory:
            parts.append(f"Memory context: {json.dumps(context.memory, default=str)}")
        parts.append(self.USER_TEMPLATE.format(input=prompt))
        return "\n\n".join(parts)

    def build_messages(self, prompt: str, context: StageContext) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system_prompt(context)},
            {"role": "user", "content": self.user_prompt(prompt, context)},
        ]

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def complete(self, prompt: str, context: StageContext) -> str:
        """Send the request and accumulate the streamed text."""
        messages = self.build_messages(prompt, context)
        chunks = []
        for delta in self.llm_client.stream_chat(messages, self.model, temperature=self.temperature):
            chunks.append(delta)
        return "".join(chunks).strip()

    def run(self, prompt: str, context: Optional[StageContext] = None) -> StageResponse:
        """
        Run the stage once.

        Args:
            prompt: Upstream text (cycle input or the previous stage's output)
            context: Cycle id, directive and continuity window

        Returns:
            StageResponse (a fallback payload if the backend failed)
        """
        context = context or StageContext()
        start = time.time()
        try:
            text = self.complete(prompt, context)
        except LLMClientError as e:
            logger.warning("%s stage fell back at cycle %d: %s", self.name, context.cycle_id, e)
            return self.fallback(str(e), duration_ms=int((time.time() - start) * 1000))

        duration_ms = int((time.time() - start) * 1000)
        reasoning = [f"{self.name} completed with {self.model} in {duration_ms}ms"]
        reasoning.extend(self.compliance_notes(text, context))
        logger.debug("%s stage cycle %d: %d chars", self.name, context.cycle_id, len(text))

        return StageResponse(
            text=text,
            confidence=self.CONFIDENCE,
            reasoning=reasoning,
            stage=self.name,
            model=self.model,
            duration_ms=duration_ms,
        )

    def compliance_notes(self, text: str, context: StageContext) -> List[str]:
        if context.directive is None:
            return []
        issues = context.directive.check_compliance(text)
        if not issues:
            return [f"directive '{context.directive.name}' followed"]
        return [f"directive '{context.directive.name}' not followed: " + "; ".join(issues)]

    def fallback(self, error: str, duration_ms: int = 0) -> StageResponse:
        """Fixed low-confidence payload used when the stage could not run."""
        return StageResponse(
            text=self.fallback_text(),
            confidence=self.fallback_confidence,
            reasoning=[f"{self.name} fallback: {error}"],
            stage=self.name,
            model=self.model,
            duration_ms=duration_ms,
            fallback=True,
        )

    def fallback_text(self) -> str:
        return f"The {self.name} stage produced no output this cycle (backend unavailable)."

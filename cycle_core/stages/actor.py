"""
ACTOR_STAGE
===========

Third stage: turns the Analyst's output into an action and dispatches it.

The model is asked for a JSON decision::

    {"agent": "math", "action": "evaluate", "parameters": {"expression": "2 + 2"}}

``agentId`` is accepted as a synonym for ``agent``. The object may be bare,
wrapped in a fenced code block, or embedded in prose; the first parsable
object wins. Anything else falls back to the ``content`` agent with the raw
model text as parameters.

Two Steps
---------
``decide()`` calls the model and parses the decision (nothing is dispatched).
``execute()`` dispatches it through the AgentRegistry and fills in the
outcome. ``execute()`` lets ``AgentNotFoundError`` / ``AgentTimeoutError``
escape so the caller decides what a dispatch failure means; ``failed()``
builds the standard failed result for that case. ``run()`` chains the two.
"""

import json
import logging
import re
import time
from dataclasses import replace
from typing import Any, Dict, Optional

from ..agents.registry import AgentRegistry
from ..llm.client import LLMClient, LLMClientError
from ..models import ActionResult
from .base import BaseStage, StageContext

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

DEFAULT_AGENT = "content"
DEFAULT_ACTION = "generate_response"


def parse_decision(text: str) -> Optional[Dict[str, Any]]:
    """
    Extract ``{agent, action, parameters}`` from model text.

    Returns:
        Normalized decision dict, or None if no usable object was found
    """
    candidates = [text.strip()]
    candidates.extend(m.group(1) for m in _FENCED_JSON.finditer(text))
    first, last = text.find("{"), text.rfind("}")
    if 0 <= first < last:
        candidates.append(text[first:last + 1])

    for raw in candidates:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            continue
        if not isinstance(data, dict):
            continue
        agent = data.get("agent") or data.get("agentId")
        if not isinstance(agent, str) or not agent.strip():
            continue
        action = data.get("action")
        return {
            "agent": agent.strip(),
            "action": action if isinstance(action, str) and action else "execute",
            "parameters": data.get("parameters", {}),
        }
    return None


class ActorStage(BaseStage):
    """Decides on an agent action and dispatches it."""

    name = "actor"
    CONFIDENCE = 0.80

    ROLE_INSTRUCTIONS = """You are the Actor, the final stage of a recursive reasoning pipeline.
Your role is to read the Analyst's output and decide which agent should act on it.

Available agents:
{agents}

Respond with JSON only, in this format:
{{
  "agent": "agent_id",
  "action": "specific_action_to_take",
  "parameters": "action_parameters"
}}

Be decisive and choose the single most appropriate agent."""

    USER_TEMPLATE = "Analyst output: {input}\n\nDetermine the execution strategy:"

    def __init__(
        self,
        llm_client: LLMClient,
        model: str,
        registry: AgentRegistry,
        continuity_window: int = 2,
        fallback_confidence: float = 0.2,
        dispatch_timeout: float = None,
        temperature: Optional[float] = None,
    ):
        super().__init__(llm_client, model, continuity_window, fallback_confidence, temperature)
        self.registry = registry
        self.dispatch_timeout = dispatch_timeout

    def system_prompt(self, context: StageContext) -> str:
        role = self.ROLE_INSTRUCTIONS.format(agents=self.registry.describe())
        if context.directive is None:
            return role
        # Actor output must stay JSON; only the lens is passed on
        return f"{role}\n\nCurrent perspective: {context.directive.name} ({context.directive.lens or context.directive.prompt})"

    # ========================================================================
    # DECIDE / EXECUTE
    # ========================================================================

    def decide(self, prompt: str, context: Optional[StageContext] = None) -> ActionResult:
        """Call the model and parse its decision. Nothing is dispatched."""
        context = context or StageContext()
        start = time.time()
        try:
            text = self.complete(prompt, context)
        except LLMClientError as e:
            logger.warning("actor stage fell back at cycle %d: %s", context.cycle_id, e)
            return self.fallback(str(e), duration_ms=int((time.time() - start) * 1000))

        duration_ms = int((time.time() - start) * 1000)
        reasoning = [f"actor completed with {self.model} in {duration_ms}ms"]

        decision = parse_decision(text)
        if decision is None:
            logger.info("Actor output at cycle %d was not a JSON decision, using %s agent",
                        context.cycle_id, DEFAULT_AGENT)
            reasoning.append(f"decision not parsable, defaulted to '{DEFAULT_AGENT}' agent")
            decision = {"agent": DEFAULT_AGENT, "action": DEFAULT_ACTION, "parameters": text}

        return ActionResult(
            text=text,
            confidence=self.CONFIDENCE,
            reasoning=reasoning,
            stage=self.name,
            model=self.model,
            duration_ms=duration_ms,
            agent_used=decision["agent"],
            action=decision["action"],
            parameters=decision["parameters"],
            logs=[f"Actor decision: {json.dumps(decision, default=str)}"],
        )

    def execute(self, decided: ActionResult) -> ActionResult:
        """
        Dispatch a decision.

        Raises:
            AgentNotFoundError: Unknown agent id
            AgentTimeoutError: Handler exceeded the dispatch timeout
        """
        if decided.fallback:
            return decided
        logger.info("Dispatching to agent '%s' action '%s'", decided.agent_used, decided.action)
        result = self.registry.dispatch(
            decided.agent_used, decided.action, decided.parameters, timeout=self.dispatch_timeout
        )
        return replace(
            decided,
            result=result,
            success=True,
            logs=decided.logs + [f"Agent result: {json.dumps(result, default=str)}"],
        )

    def failed(self, decided: ActionResult, error: Exception) -> ActionResult:
        """The failed ActionResult recorded when dispatch raised."""
        return replace(
            decided,
            result={"error": str(error)},
            success=False,
            reasoning=decided.reasoning + [f"dispatch failed: {error}"],
            logs=decided.logs + [f"Dispatch error: {error}"],
        )

    def run(self, prompt: str, context: Optional[StageContext] = None) -> ActionResult:
        return self.execute(self.decide(prompt, context))

    def fallback(self, error: str, duration_ms: int = 0) -> ActionResult:
        return ActionResult(
            text=self.fallback_text(),
            confidence=self.fallback_confidence,
            reasoning=[f"actor fallback: {error}"],
            stage=self.name,
            model=self.model,
            duration_ms=duration_ms,
            fallback=True,
            agent_used="",
            action="none",
            result={"error": error},
            success=False,
            logs=[f"Actor error: {error}"],
        )

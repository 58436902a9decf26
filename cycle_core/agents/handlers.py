"""
AGENT_HANDLERS
==============

The six built-in agents the Actor stage can dispatch to.

Side effects are simulated: every handler returns ``{type, data, timestamp}``
describing what it would have done. The ``math`` agent is the exception: it
really evaluates plain arithmetic, using an AST whitelist (no ``eval``).

Available Agents
----------------
- ``memory``  - Recall from local memory
- ``api``     - External API interaction (stub)
- ``system``  - System command execution (simulated)
- ``content`` - Content generation (default when the Actor's JSON is unusable)
- ``math``    - Arithmetic evaluation
- ``scroll``  - Append a line to the session scroll (simulated)
"""

import ast
import json
import logging
import operator
import time
from typing import Any, Dict

from .registry import AgentRegistry, AgentSpec

logger = logging.getLogger(__name__)


# ============================================================================
# SAFE ARITHMETIC
# ============================================================================

BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def safe_arithmetic(expression: str) -> float:
    """Evaluate +, -, *, /, //, %, ** over numeric literals.

    Raises:
        ValueError: For anything that is not plain arithmetic
    """
    if len(expression) > 500:
        raise ValueError("Expression too long (max 500 characters)")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression syntax: {e}")
    return _eval_node(tree.body)


def _eval_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
            and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.UnaryOp) and type(node.op) in UNARY_OPS:
        return UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.BinOp) and type(node.op) in BINARY_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > 100:
            raise ValueError("Exponent too large (max 100)")
        return BINARY_OPS[type(node.op)](left, right)
    raise ValueError(f"Unsupported expression: {type(node).__name__}")


# ============================================================================
# HANDLERS
# ============================================================================

def _payload(kind: str, data: Any) -> Dict:
    return {"type": kind, "data": data, "timestamp": time.time()}


def _split_instruction(instruction: str) -> tuple:
    """Split ``"action: <json>"`` back into (action, parameters)."""
    action, _, raw = instruction.partition(": ")
    try:
        return action, json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return action, raw


def memory_handler(instruction: str) -> Dict:
    logger.debug("Memory agent executing: %s", instruction[:120])
    return _payload("memory_recall", f"Recalled: {instruction}")


def api_handler(instruction: str) -> Dict:
    logger.debug("API agent executing: %s", instruction[:120])
    return _payload("api_call", f"API stub response for: {instruction}")


def system_handler(instruction: str) -> Dict:
    logger.debug("System agent executing: %s", instruction[:120])
    return _payload("system_command", f"System operation: {instruction}")


def content_handler(instruction: str) -> Dict:
    logger.debug("Content agent executing: %s", instruction[:120])
    return _payload("content_generation", f"Generated content based on: {instruction}")


def math_handler(instruction: str) -> Dict:
    _, params = _split_instruction(instruction)
    expression = params.get("expression") if isinstance(params, dict) else params
    if isinstance(expression, (int, float)):
        return _payload("mathematical_evaluation", {"expression": str(expression), "result": expression})
    if isinstance(expression, str):
        try:
            value = safe_arithmetic(expression)
            return _payload("mathematical_evaluation", {"expression": expression, "result": value})
        except (ValueError, ZeroDivisionError, OverflowError) as e:
            logger.debug("Math agent could not evaluate %r: %s", expression, e)
    return _payload("mathematical_evaluation", f"Mathematical result for: {instruction}")


def scroll_handler(instruction: str) -> Dict:
    logger.debug("Scroll agent executing: %s", instruction[:120])
    return _payload("scroll_entry", f"Recorded: {instruction}")


DEFAULT_AGENTS = [
    AgentSpec("memory", "Memory Recall Agent", memory_handler, "memory",
              "Recall information from local memory"),
    AgentSpec("api", "API Interface Agent", api_handler, "api",
              "External API interaction (stub)"),
    AgentSpec("system", "System Command Agent", system_handler, "system",
              "System-level command execution (simulated)"),
    AgentSpec("content", "Content Generation Agent", content_handler, "content",
              "Generate written content"),
    AgentSpec("math", "Mathematical Evaluation Agent", math_handler, "math",
              "Evaluate an arithmetic expression given as parameters"),
    AgentSpec("scroll", "Scroll Writer", scroll_handler, "scroll",
              "Record a line in the session scroll"),
]


def create_default_registry(timeout: float = AgentRegistry.DEFAULT_TIMEOUT) -> AgentRegistry:
    """Build the standard six-agent registry, frozen."""
    registry = AgentRegistry(default_timeout=timeout)
    for spec in DEFAULT_AGENTS:
        registry.register(spec)
    return registry.freeze()

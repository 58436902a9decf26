"""
AGENT_REGISTRY
==============

Named side-effect handlers that the Actor stage dispatches to.

The Actor turns its own model output into a decision
``{agent, action, parameters}``; the registry looks the agent up by id and
runs its handler with a single instruction string. Handlers are simulated in
this core. Each returns an opaque, JSON-serializable payload.

Architecture
------------
::

    AgentSpec (frozen)
    ├── id, name, kind, description
    └── handler(instruction) → {type, data, timestamp}

    AgentRegistry
    ├── register(spec)        - Add an agent (only before freeze())
    ├── freeze()              - Make the table read-only
    ├── dispatch(id, action, parameters) - Run handler with timeout (default 30s)
    └── list_agents()         - Ids in registration order

Safety
------
- **Timeout**: handlers run on a ThreadPoolExecutor (max 4 workers) and are
  abandoned after ``default_timeout`` seconds with ``AgentTimeoutError``.
- **Unknown agents**: ``AgentNotFoundError``. The loop controller converts it
  into a failed action result; it never ends the session.
- **Read-only after init**: once frozen the table can be shared across
  dispatches without locking.
- Handlers may be plain functions or coroutine functions; coroutines are run
  to completion on the worker thread.

Usage::

    registry = create_default_registry()
    result = registry.dispatch("math", "evaluate", "2 + 2")
"""

import asyncio
import inspect
import json
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


class AgentNotFoundError(LookupError):
    """Raised when a dispatch names an agent that is not registered."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} not found")
        self.agent_id = agent_id


class AgentTimeoutError(TimeoutError):
    """Raised when a handler does not finish within the dispatch timeout."""


class RegistryFrozenError(RuntimeError):
    """Raised when registering into a frozen registry."""


# ============================================================================
# AGENT SPEC
# ============================================================================

@dataclass(frozen=True)
class AgentSpec:
    """An entry in the agent table."""
    id: str
    name: str
    handler: Callable[[str], Any]
    kind: str = ""
    description: str = ""

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "description": self.description,
        }


def format_instruction(action: str, parameters: Any) -> str:
    """Build the single instruction string a handler receives."""
    try:
        params = json.dumps(parameters, default=str)
    except (TypeError, ValueError):
        params = json.dumps(str(parameters))
    return f"{action}: {params}"


# ============================================================================
# AGENT REGISTRY
# ============================================================================

class AgentRegistry:
    """
    Registry for the Actor stage's dispatch targets.

    Handles:
    - Agent registration and lookup
    - Dispatch by id with timeout
    - Read-only freezing after initialization
    """

    DEFAULT_TIMEOUT = 30  # seconds

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT):
        self._agents: Dict[str, AgentSpec] = {}
        self._frozen = False
        self.default_timeout = default_timeout
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="agent-dispatch")

    def register(self, spec: AgentSpec) -> None:
        """Register an agent."""
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register '{spec.id}': registry is frozen")
        self._agents[spec.id] = spec

    def freeze(self) -> "AgentRegistry":
        """Make the registry read-only. Returns self for chaining."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, agent_id: str) -> Optional[AgentSpec]:
        """Get an agent by id."""
        return self._agents.get(agent_id)

    def has(self, agent_id: str) -> bool:
        """Check if an agent is registered."""
        return agent_id in self._agents

    def list_agents(self) -> List[str]:
        """List all registered agent ids."""
        return list(self._agents.keys())

    def describe(self) -> str:
        """One line per agent, for the Actor's system prompt."""
        return "\n".join(
            f"- {spec.id}: {spec.description or spec.name}" for spec in self._agents.values()
        )

    def dispatch(self, agent_id: str, action: str, parameters: Any, timeout: float = None) -> Any:
        """
        Run an agent's handler.

        Args:
            agent_id: Registered agent id
            action: Action name chosen by the Actor
            parameters: Action parameters (any JSON-serializable value)
            timeout: Seconds to wait (uses default if None)

        Returns:
            The handler's opaque result payload

        Raises:
            AgentNotFoundError: If agent_id is not registered
            AgentTimeoutError: If the handler exceeds the timeout
        """
        spec = self._agents.get(agent_id)
        if spec is None:
            raise AgentNotFoundError(agent_id)

        instruction = format_instruction(action, parameters)
        timeout = timeout or self.default_timeout

        future = self._executor.submit(self._invoke, spec.handler, instruction)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            future.cancel()
            raise AgentTimeoutError(f"Agent '{agent_id}' timed out after {timeout} seconds")

    @staticmethod
    def _invoke(handler: Callable[[str], Any], instruction: str) -> Any:
        result = handler(instruction)
        if inspect.isawaitable(result):
            return asyncio.run(_await(result))
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


async def _await(awaitable):
    return await awaitable

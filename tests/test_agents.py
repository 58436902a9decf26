import threading

import pytest

from cycle_core.agents import (
    AgentNotFoundError,
    AgentRegistry,
    AgentSpec,
    AgentTimeoutError,
    RegistryFrozenError,
    create_default_registry,
    format_instruction,
    safe_arithmetic,
)


@pytest.fixture
def registry():
    registry = create_default_registry(timeout=5)
    yield registry
    registry.shutdown()


def test_default_agents_in_order(registry):
    assert registry.list_agents() == ["memory", "api", "system", "content", "math", "scroll"]
    assert registry.frozen
    assert "- math:" in registry.describe()


def test_frozen_registry_rejects_registration(registry):
    with pytest.raises(RegistryFrozenError):
        registry.register(AgentSpec("extra", "Extra", lambda instruction: instruction))


def test_unknown_agent(registry):
    with pytest.raises(AgentNotFoundError) as exc:
        registry.dispatch("quantum_computer", "solve", {})
    assert str(exc.value) == "Agent quantum_computer not found"
    assert exc.value.agent_id == "quantum_computer"


def test_simulated_handlers_return_payload(registry):
    result = registry.dispatch("memory", "recall", {"topic": "tides"})

    assert result["type"] == "memory_recall"
    assert 'recall: {"topic": "tides"}' in result["data"]
    assert isinstance(result["timestamp"], float)


def test_math_agent_evaluates_expression(registry):
    result = registry.dispatch("math", "evaluate", {"expression": "2 + 3 * 4"})
    assert result["data"] == {"expression": "2 + 3 * 4", "result": 14}


def test_math_agent_falls_back_on_unsafe_input(registry):
    result = registry.dispatch("math", "evaluate", {"expression": "__import__('os')"})
    assert result["type"] == "mathematical_evaluation"
    assert result["data"].startswith("Mathematical result for:")


def test_handler_receives_single_instruction_string():
    received = []
    registry = AgentRegistry(default_timeout=5)
    registry.register(AgentSpec("echo", "Echo", lambda instruction: received.append(instruction) or "ok"))
    try:
        assert registry.dispatch("echo", "say", ["a", 1]) == "ok"
    finally:
        registry.shutdown()
    assert received == ['say: ["a", 1]']


def test_async_handler_is_awaited():
    async def handler(instruction):
        return {"echo": instruction}

    registry = AgentRegistry(default_timeout=5)
    registry.register(AgentSpec("async", "Async", handler))
    try:
        assert registry.dispatch("async", "ping", {}) == {"echo": "ping: {}"}
    finally:
        registry.shutdown()


def test_dispatch_timeout():
    release = threading.Event()
    registry = AgentRegistry(default_timeout=5)
    registry.register(AgentSpec("slow", "Slow", lambda instruction: release.wait(5)))
    try:
        with pytest.raises(AgentTimeoutError):
            registry.dispatch("slow", "wait", {}, timeout=0.05)
    finally:
        release.set()
        registry.shutdown()


def test_handler_errors_propagate():
    def broken(instruction):
        raise RuntimeError("disk full")

    registry = AgentRegistry()
    registry.register(AgentSpec("broken", "Broken", broken))
    try:
        with pytest.raises(RuntimeError, match="disk full"):
            registry.dispatch("broken", "write", {})
    finally:
        registry.shutdown()


def test_format_instruction_handles_unserializable_values():
    assert format_instruction("noop", object()).startswith("noop: ")


class TestSafeArithmetic:

    @pytest.mark.parametrize("expression,expected", [
        ("2 + 3", 5),
        ("-4 ** 2", -16),
        ("7 // 2", 3),
        ("10 % 4", 2),
        ("1 / 4", 0.25),
    ])
    def test_valid(self, expression, expected):
        assert safe_arithmetic(expression) == expected

    @pytest.mark.parametrize("expression", [
        "x + 1",
        "abs(-1)",
        "True + 1",
        "2 ** 1000",
        "'a' * 3",
        "1 +",
    ])
    def test_rejected(self, expression):
        with pytest.raises(ValueError):
            safe_arithmetic(expression)

"""Tests for the handler registry and the simulated built-in handlers."""

from __future__ import annotations

import multiprocessing
import os
import signal
import time
from collections.abc import Iterator
from typing import Any

import psutil
import pytest

from ecodefer.config import DEFAULT_ALLOWED_TASKS
from ecodefer.errors import ExecutionFailure, ExecutionTimeout
from ecodefer.handlers.builtin import BUILTIN_HANDLERS, register_builtin_handlers
from ecodefer.handlers.registry import HandlerRegistry
from ecodefer.models import SandboxConstraints


@pytest.fixture
def registry() -> Iterator[HandlerRegistry]:
    reg = HandlerRegistry(terminate_grace_s=1.0)
    yield reg
    reg.shutdown()


_FORK = multiprocessing.get_context("fork")


def _constraints(timeout_s: float = 5.0) -> SandboxConstraints:
    return SandboxConstraints(timeout_s=timeout_s, memory_limit_mb=500)


def test_register_and_invoke(registry: HandlerRegistry) -> None:
    def handler(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
        return {"seen": payload, "limit": constraints.memory_limit_mb}

    registry.register("job", handler)
    assert "job" in registry
    assert registry.invoke("job", {"x": 1}, _constraints()) == {"seen": {"x": 1}, "limit": 500}


def test_handler_runs_in_child_process(registry: HandlerRegistry) -> None:
    registry.register("job", lambda payload, constraints: {"pid": os.getpid()})
    result = registry.invoke("job", {}, _constraints())
    assert result["pid"] != os.getpid()
    assert registry.running() == 0


def test_unknown_handler(registry: HandlerRegistry) -> None:
    with pytest.raises(ExecutionFailure):
        registry.invoke("missing", {}, _constraints())


def test_register_requires_callable(registry: HandlerRegistry) -> None:
    with pytest.raises(TypeError):
        registry.register("job", "not a function")  # type: ignore[arg-type]


def test_unregister(registry: HandlerRegistry) -> None:
    registry.register("job", lambda payload, constraints: {})
    registry.unregister("job")
    assert registry.names() == []


def test_handler_exception_becomes_failure(registry: HandlerRegistry) -> None:
    def handler(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
        raise OSError("disk gone")

    registry.register("job", handler)
    with pytest.raises(ExecutionFailure, match="OSError: disk gone"):
        registry.invoke("job", {}, _constraints(), task_id="t1")


def test_reported_failure(registry: HandlerRegistry) -> None:
    registry.register("job", lambda payload, constraints: {"success": False, "error": "nope"})
    with pytest.raises(ExecutionFailure, match="nope"):
        registry.invoke("job", {}, _constraints())


def test_non_dict_result(registry: HandlerRegistry) -> None:
    registry.register("job", lambda payload, constraints: "done")
    with pytest.raises(ExecutionFailure):
        registry.invoke("job", {}, _constraints())


def test_none_result_is_empty(registry: HandlerRegistry) -> None:
    registry.register("job", lambda payload, constraints: None)
    assert registry.invoke("job", {}, _constraints()) == {}


def test_timeout_terminates_handler(registry: HandlerRegistry) -> None:
    pid = _FORK.Value("i", 0)

    def stubborn(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
        pid.value = os.getpid()
        time.sleep(30)
        return {"late": True}

    registry.register("stubborn", stubborn)
    constraints = _constraints(timeout_s=0.3)
    started = time.monotonic()
    with pytest.raises(ExecutionTimeout, match="exceeded its 0.3s timeout"):
        registry.invoke("stubborn", {}, constraints, task_id="t1")

    assert time.monotonic() - started < 5.0
    assert constraints.cancelled
    assert pid.value != 0
    assert not psutil.pid_exists(pid.value)
    assert registry.running() == 0


def test_sigterm_resistant_handler_is_killed() -> None:
    registry = HandlerRegistry(terminate_grace_s=0.2)
    ready = _FORK.Event()

    def shielded(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        ready.set()
        time.sleep(30)
        return {}

    registry.register("shielded", shielded)
    with pytest.raises(ExecutionTimeout):
        registry.invoke("shielded", {}, _constraints(timeout_s=0.5))
    assert ready.is_set()
    assert registry.running() == 0


def test_handler_dying_without_result(registry: HandlerRegistry) -> None:
    registry.register("job", lambda payload, constraints: os._exit(3))
    with pytest.raises(ExecutionFailure, match="exited with code 3"):
        registry.invoke("job", {}, _constraints())


def test_unpicklable_result(registry: HandlerRegistry) -> None:
    registry.register("job", lambda payload, constraints: {"lock": _FORK.Lock()})
    with pytest.raises(ExecutionFailure, match="unpicklable result"):
        registry.invoke("job", {}, _constraints())


def test_timeout_is_an_execution_failure() -> None:
    assert issubclass(ExecutionTimeout, ExecutionFailure)


class TestBuiltinHandlers:
    def test_cover_default_whitelist(self, registry: HandlerRegistry) -> None:
        register_builtin_handlers(registry)
        assert registry.names() == sorted(DEFAULT_ALLOWED_TASKS)

    def test_results_derive_from_payload(self, registry: HandlerRegistry) -> None:
        register_builtin_handlers(registry)
        result = registry.invoke("database-cleanup", {"data_size_mb": 2}, _constraints())
        assert result == {"rows_removed": 200, "vacuumed": True}
        assert registry.invoke("cache-warming", {"keys": ["a", "b"]}, _constraints()) == {
            "keys_warmed": 2
        }

    def test_long_duration_is_terminated(self, registry: HandlerRegistry) -> None:
        register_builtin_handlers(registry)
        started = time.monotonic()
        with pytest.raises(ExecutionTimeout):
            registry.invoke("log-rotation", {"duration_s": 30}, _constraints(timeout_s=0.2))
        assert time.monotonic() - started < 5.0
        assert registry.running() == 0

    def test_short_duration_completes(self) -> None:
        result = BUILTIN_HANDLERS["report-generation"]({"duration_s": 0.1}, _constraints())
        assert result == {"report": "summary", "pages": 1}

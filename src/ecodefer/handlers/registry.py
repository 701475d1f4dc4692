"""Task handler registry.

Handlers are plain callables ``handler(payload, constraints) -> dict``. Each
invocation runs in a forked child process so an overrunning handler can be
forcibly terminated: on timeout the child gets SIGTERM, then SIGKILL if it is
still alive after a grace period. Results travel back over a pipe, so they
must be picklable.
"""

from __future__ import annotations

import logging
import multiprocessing
import threading
from collections.abc import Callable
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from typing import Any

from ecodefer.errors import ExecutionFailure, ExecutionTimeout
from ecodefer.models import SandboxConstraints

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any], SandboxConstraints], dict[str, Any] | None]

# Fork keeps closures and locally defined handlers usable without pickling
_CONTEXT = multiprocessing.get_context("fork")

TERMINATE_GRACE_S = 5.0


def _run_handler(
    handler: Handler,
    payload: dict[str, Any],
    constraints: SandboxConstraints,
    sender: Connection,
) -> None:
    """Child-process entry point: run the handler and report over the pipe."""
    try:
        result = handler(payload, constraints)
    except Exception as e:
        sender.send(("error", f"{type(e).__name__}: {e}"))
    else:
        try:
            sender.send(("ok", result))
        except Exception as e:
            sender.send(("error", f"unpicklable result ({type(e).__name__}: {e})"))
    finally:
        sender.close()


class HandlerRegistry:
    def __init__(self, terminate_grace_s: float = TERMINATE_GRACE_S) -> None:
        self.terminate_grace_s = terminate_grace_s
        self._handlers: dict[str, Handler] = {}
        self._processes: set[BaseProcess] = set()
        self._lock = threading.Lock()

    def register(self, name: str, handler: Handler) -> None:
        if not callable(handler):
            raise TypeError(f"Handler for {name} is not callable")
        with self._lock:
            self._handlers[name] = handler
        logger.debug(f"Handler registered: {name}")

    def unregister(self, name: str) -> None:
        with self._lock:
            self._handlers.pop(name, None)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._handlers

    def get(self, name: str) -> Handler:
        with self._lock:
            handler = self._handlers.get(name)
        if handler is None:
            raise ExecutionFailure(f"No handler registered for {name}")
        return handler

    def running(self) -> int:
        """Number of handler processes still alive."""
        with self._lock:
            return sum(1 for process in self._processes if process.is_alive())

    def invoke(
        self,
        name: str,
        payload: dict[str, Any],
        constraints: SandboxConstraints,
        task_id: str | None = None,
    ) -> dict[str, Any]:
        """Run a handler in a child process, killing it after ``constraints.timeout_s``.

        Raises:
            ExecutionTimeout: the handler overran its timeout and was terminated.
            ExecutionFailure: the handler raised, died, returned a non-dict,
                or reported ``success: False``.
        """
        handler = self.get(name)
        receiver, sender = _CONTEXT.Pipe(duplex=False)
        process = _CONTEXT.Process(
            target=_run_handler,
            args=(handler, dict(payload), constraints, sender),
            name=f"ecodefer-handler-{name}",
            daemon=True,
        )
        with self._lock:
            self._processes.add(process)
        try:
            process.start()
            sender.close()
            if not receiver.poll(constraints.timeout_s):
                constraints.cancel_event.set()
                self._terminate(process)
                raise ExecutionTimeout(
                    f"{name} exceeded its {constraints.timeout_s:g}s timeout", task_id=task_id
                )
            try:
                status, value = receiver.recv()
            except EOFError:
                process.join()
                raise ExecutionFailure(
                    f"{name} exited with code {process.exitcode} before reporting",
                    task_id=task_id,
                ) from None
            process.join()
        finally:
            receiver.close()
            with self._lock:
                self._processes.discard(process)

        if status == "error":
            raise ExecutionFailure(f"{name} raised {value}", task_id=task_id)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ExecutionFailure(
                f"{name} returned {type(value).__name__}, expected dict", task_id=task_id
            )
        if value.get("success") is False:
            raise ExecutionFailure(
                f"{name} reported failure: {value.get('error', 'unknown error')}", task_id=task_id
            )
        return value

    def _terminate(self, process: BaseProcess) -> None:
        process.terminate()
        process.join(self.terminate_grace_s)
        if process.is_alive():
            logger.warning(f"{process.name} ignored SIGTERM; killing pid {process.pid}")
            process.kill()
            process.join()
        logger.info(f"Terminated {process.name} (exit code {process.exitcode})")

    def shutdown(self) -> None:
        """Terminate any handler processes still running."""
        with self._lock:
            processes = [process for process in self._processes if process.is_alive()]
        for process in processes:
            self._terminate(process)

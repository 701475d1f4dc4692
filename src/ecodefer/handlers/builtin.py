"""
Simulated handlers for the default whitelist.

They do no real work. Each one reports plausible figures derived from the
payload, and sleeps for an optional ``duration_s`` so the service can be
exercised end to end from the CLI. An overrunning one is terminated by the
registry like any other handler.
"""

from __future__ import annotations

import time
from typing import Any

from ecodefer.handlers.registry import HandlerRegistry
from ecodefer.models import SandboxConstraints


def _simulate(payload: dict[str, Any]) -> None:
    duration_s = float(payload.get("duration_s") or 0.0)
    if duration_s > 0:
        time.sleep(duration_s)


def _size(payload: dict[str, Any]) -> float:
    return float(payload.get("data_size_mb") or 0.0)


def database_cleanup(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
    _simulate(payload)
    return {"rows_removed": int(_size(payload) * 100), "vacuumed": True}


def index_optimization(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
    _simulate(payload)
    return {"indexes_rebuilt": int(payload.get("indexes", 1))}


def cache_warming(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
    _simulate(payload)
    keys = payload.get("keys") or []
    return {"keys_warmed": len(keys)}


def log_rotation(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
    _simulate(payload)
    return {"files_rotated": int(payload.get("files", 1)), "freed_mb": _size(payload)}


def metrics_aggregation(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
    _simulate(payload)
    return {"series_aggregated": int(payload.get("series", 1))}


def backup_verification(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
    _simulate(payload)
    return {"verified_mb": _size(payload), "checksum_ok": True}


def report_generation(payload: dict[str, Any], constraints: SandboxConstraints) -> dict[str, Any]:
    _simulate(payload)
    return {"report": payload.get("report", "summary"), "pages": int(payload.get("pages", 1))}


BUILTIN_HANDLERS = {
    "database-cleanup": database_cleanup,
    "index-optimization": index_optimization,
    "cache-warming": cache_warming,
    "log-rotation": log_rotation,
    "metrics-aggregation": metrics_aggregation,
    "backup-verification": backup_verification,
    "report-generation": report_generation,
}


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    for name, handler in BUILTIN_HANDLERS.items():
        registry.register(name, handler)
    return registry

"""Pluggable task handlers, invoked only after approval."""

from ecodefer.handlers.builtin import BUILTIN_HANDLERS, register_builtin_handlers
from ecodefer.handlers.registry import Handler, HandlerRegistry

__all__ = ["BUILTIN_HANDLERS", "Handler", "HandlerRegistry", "register_builtin_handlers"]

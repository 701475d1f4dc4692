"""EcoDefer - local-first task deferral and delegation service."""

__version__ = "0.1.0"

"""Task execution engine: durable queue, executor and the deferral service."""

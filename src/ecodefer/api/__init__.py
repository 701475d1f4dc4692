"""HTTP surface for the deferral service."""

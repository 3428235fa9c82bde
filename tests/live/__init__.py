"""Smoke runs against a real reviewer service; skipped unless one is reachable."""

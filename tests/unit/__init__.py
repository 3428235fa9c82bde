"""Unit tests: no network, no threads beyond what the unit under test starts."""

"""Exception types raised by the load harness."""

from __future__ import annotations


class ConfigError(ValueError):
    """A load profile, stage list or YAML override is invalid."""


class UnknownMetricError(KeyError):
    """A metric name was used without being declared first."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown metric: {self.name}"


class MetricKindError(TypeError):
    """A metric was re-declared (or queried) as a different kind."""


class ThresholdSyntaxError(ConfigError):
    """A threshold expression could not be parsed or does not fit its metric."""

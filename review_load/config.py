"""
Load profile configuration.

Profiles are plain classes whose attributes come from environment
variables with sensible defaults (``default``, ``smoke``, ``testing``).
A YAML file may override any part of the selected profile, which is
then validated into an immutable :class:`LoadProfile`.

Example override file::

    base_url: http://staging:8080
    stages:
      - {duration: 1m, target: 10}
      - {duration: 30s, target: 0}
    thresholds:
      http_req_duration: ["p(95)<250"]
      http_req_failed{name:Reassign}:
        - {threshold: "rate<0.2", abort_on_fail: true, delay_abort_eval: 30s}
    fixtures: {team_count: 5, members_per_team: 6, pr_count: 10}
    scenario: {pause: 0.05, deactivate_probability: 0.3}
    empty_metric_policy: skip
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from review_load.errors import ConfigError
from review_load.lifecycle import FixtureSizing
from review_load.scheduler import Stage
from review_load.thresholds import EmptyMetricPolicy, Threshold, parse_thresholds

DEFAULT_STAGES: list[dict[str, Any]] = [
    {"duration": "30s", "target": 2},
    {"duration": "1m", "target": 5},
    {"duration": "30s", "target": 5},
    {"duration": "30s", "target": 0},
]

DEFAULT_THRESHOLDS: dict[str, list[str]] = {
    "http_req_duration": ["p(95)<300", "p(99.9)<300"],
    "http_req_failed{name:CreateTeam}": ["rate<0.001"],
    "http_req_failed{name:CreatePR}": ["rate<0.001"],
    # Reassign can legitimately hit NO_CANDIDATE conflicts.
    "http_req_failed{name:Reassign}": ["rate<0.1"],
    "create_team_duration": ["p(95)<300"],
    "create_pr_duration": ["p(95)<300"],
    "reassign_duration": ["p(95)<300"],
    "deactivate_duration": ["p(95)<100"],
}

_ALLOWED_KEYS = {
    "base_url",
    "request_timeout",
    "stages",
    "thresholds",
    "fixtures",
    "scenario",
    "empty_metric_policy",
}


class Config:
    """Base profile: the full ramp used for SLA verification."""

    BASE_URL: str = os.environ.get("BASE_URL", "http://localhost:8080")
    REQUEST_TIMEOUT: float = float(os.environ.get("REQUEST_TIMEOUT", "10"))
    EMPTY_METRIC_POLICY: str = os.environ.get("EMPTY_METRIC_POLICY", "fail")

    STAGES: list[dict[str, Any]] = DEFAULT_STAGES
    THRESHOLDS: dict[str, list[Any]] = DEFAULT_THRESHOLDS

    FIXTURE_TEAM_COUNT: int = 20
    FIXTURE_MEMBERS_PER_TEAM: int = 10
    FIXTURE_PR_COUNT: int = 50

    STEP_PAUSE: float = 0.1
    DEACTIVATE_PROBABILITY: float = 0.3
    DEACTIVATE_SPAN: int = 3
    TICK_INTERVAL: float = 0.1


class SmokeConfig(Config):
    """One virtual user for a few seconds: is the service alive and sane?"""

    STAGES = [{"duration": "10s", "target": 1}]
    FIXTURE_TEAM_COUNT = 2
    FIXTURE_MEMBERS_PER_TEAM = 5
    FIXTURE_PR_COUNT = 2


class TestingConfig(Config):
    """Sub-second profile used by the integration test suite."""

    __test__ = False  # keep pytest from collecting this class

    STAGES = [
        {"duration": "300ms", "target": 2},
        {"duration": "200ms", "target": 0},
    ]
    FIXTURE_TEAM_COUNT = 2
    FIXTURE_MEMBERS_PER_TEAM = 5
    FIXTURE_PR_COUNT = 2
    STEP_PAUSE = 0.0
    TICK_INTERVAL = 0.02


config = {
    "default": Config,
    "smoke": SmokeConfig,
    "testing": TestingConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Get the configuration class for the named profile.

    Args:
        env: Profile name (default, smoke, testing).  If None, uses the
             LOAD_PROFILE environment variable.

    Returns:
        Configuration class for the profile.

    Raises:
        ConfigError: If the profile name is unknown.
    """
    if env is None:
        env = os.environ.get("LOAD_PROFILE", "default")
    try:
        return config[env]
    except KeyError as exc:
        raise ConfigError(
            f"Unknown load profile {env!r}; choose from {', '.join(sorted(config))}"
        ) from exc


@dataclass(frozen=True)
class LoadProfile:
    """Validated, immutable settings for one run."""

    base_url: str
    request_timeout: float
    stages: tuple[Stage, ...]
    thresholds: tuple[Threshold, ...]
    sizing: FixtureSizing
    step_pause: float
    deactivate_probability: float
    deactivate_span: int
    tick_interval: float
    empty_metric_policy: EmptyMetricPolicy


def _read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML override file; an empty file means no overrides."""
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read profile file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Profile file {path} is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Profile file {path} must contain a mapping")
    unknown = set(data) - _ALLOWED_KEYS
    if unknown:
        raise ConfigError(f"Unknown keys in {path}: {', '.join(sorted(unknown))}")
    return data


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    section = data.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return section


def load_profile(
    config_class: type[Config] | None = None,
    path: Path | None = None,
    *,
    base_url: str | None = None,
    empty_metric_policy: str | None = None,
) -> LoadProfile:
    """
    Build a :class:`LoadProfile` from a config class plus optional overrides.

    Precedence, lowest first: config class attributes, YAML file at
    *path*, explicit keyword arguments.

    Raises:
        ConfigError: If any value is missing, malformed or out of range.
    """
    config_class = config_class or get_config()
    data = _read_yaml(path) if path is not None else {}
    fixtures = _section(data, "fixtures")
    scenario = _section(data, "scenario")

    raw_stages = data.get("stages", config_class.STAGES)
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ConfigError("'stages' must be a non-empty list")
    for stage in raw_stages:
        if not isinstance(stage, dict):
            raise ConfigError(
                f"Each stage must be a mapping with duration and target, got {stage!r}"
            )
    stages = tuple(Stage.from_dict(stage) for stage in raw_stages)

    raw_thresholds = data.get("thresholds", config_class.THRESHOLDS)
    if not isinstance(raw_thresholds, dict):
        raise ConfigError("'thresholds' must be a mapping of metric name to expressions")

    try:
        sizing = FixtureSizing(
            team_count=int(fixtures.get("team_count", config_class.FIXTURE_TEAM_COUNT)),
            members_per_team=int(
                fixtures.get("members_per_team", config_class.FIXTURE_MEMBERS_PER_TEAM)
            ),
            pr_count=int(fixtures.get("pr_count", config_class.FIXTURE_PR_COUNT)),
        )
        request_timeout = float(data.get("request_timeout", config_class.REQUEST_TIMEOUT))
        step_pause = float(scenario.get("pause", config_class.STEP_PAUSE))
        probability = float(
            scenario.get("deactivate_probability", config_class.DEACTIVATE_PROBABILITY)
        )
        span = int(scenario.get("deactivate_span", config_class.DEACTIVATE_SPAN))
    except ConfigError:
        raise
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric setting: {exc}") from exc

    if request_timeout <= 0:
        raise ConfigError("request_timeout must be positive")
    if step_pause < 0:
        raise ConfigError("scenario pause must be non-negative")
    if not 0.0 <= probability <= 1.0:
        raise ConfigError("deactivate_probability must be within 0..1")
    if span < 0:
        raise ConfigError("deactivate_span must be non-negative")

    policy = EmptyMetricPolicy.parse(
        empty_metric_policy
        or data.get("empty_metric_policy")
        or config_class.EMPTY_METRIC_POLICY
    )

    return LoadProfile(
        base_url=(base_url or data.get("base_url") or config_class.BASE_URL).rstrip("/"),
        request_timeout=request_timeout,
        stages=stages,
        thresholds=tuple(parse_thresholds(raw_thresholds)),
        sizing=sizing,
        step_pause=step_pause,
        deactivate_probability=probability,
        deactivate_span=span,
        tick_interval=config_class.TICK_INTERVAL,
        empty_metric_policy=policy,
    )

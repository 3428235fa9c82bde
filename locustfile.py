"""
Locust entrypoint for the PR reviewer load profile.

Runs the same scenario, stages and thresholds as ``review-load`` but
lets Locust spawn the virtual users, which adds its web UI, live charts
and CSV stats on top of the harness's own threshold gate.

Usage examples::

    # Headless, gating on the default thresholds:
    locust -f locustfile.py --headless --host http://localhost:8080

    # Smoke profile with a YAML override file:
    LOAD_PROFILE=smoke LOAD_PROFILE_FILE=load_profile.yml locust -f locustfile.py

Key Concepts Demonstrated:
- ``LoadTestShape`` driven by the harness's stage interpolation
- ``events.test_start`` for one-off fixture provisioning
- ``events.quitting`` to turn threshold failures into a non-zero exit code
- Request names forwarded to Locust so its stats group by operation
"""

from __future__ import annotations

import os
import random
from pathlib import Path
from typing import Any

import requests
from locust import HttpUser, LoadTestShape, constant, events, task

from review_load.checks import Checks
from review_load.client import ReviewServiceClient
from review_load.config import get_config, load_profile
from review_load.lifecycle import FixtureContext, setup, teardown
from review_load.metrics import MetricsRegistry, declare_builtin_metrics
from review_load.scenario import ReviewScenario, ScenarioMetrics
from review_load.scheduler import target_at, total_duration
from review_load.thresholds import ThresholdGate

_profile_file = os.environ.get("LOAD_PROFILE_FILE")
PROFILE = load_profile(get_config(), Path(_profile_file) if _profile_file else None)

# Worst case per iteration: five requests and four pauses.
ITERATION_REQUESTS = 5
ITERATION_PAUSES = 4


def iteration_budget(profile) -> float:
    """Seconds one iteration can take when every request times out."""
    return (
        ITERATION_REQUESTS * profile.request_timeout
        + ITERATION_PAUSES * profile.step_pause
        + 1.0
    )


class LocustServiceClient(ReviewServiceClient):
    """
    Service client that labels requests for Locust's stats table.

    Locust's ``HttpSession`` swallows transport errors and hands back a
    response with status 0; those are re-raised so they are recorded as
    transport failures rather than as answered requests.
    """

    def _send(self, method, url, *, name, params=None, json=None):
        response = self._session().request(
            method,
            url,
            name=name,
            params=params,
            json=json,
            timeout=self.timeout,
        )
        if response.status_code == 0:
            error = getattr(response, "error", None)
            if isinstance(error, requests.RequestException):
                raise error
            raise requests.ConnectionError(f"{method} {url} got no response: {error}")
        return response


class _Run:
    """Per-test state created in ``test_start`` and read by every user."""

    def __init__(self, base_url: str):
        self.registry = MetricsRegistry()
        self.http_metrics, _ = declare_builtin_metrics(self.registry)
        self.scenario_metrics = ScenarioMetrics.declare(self.registry)
        self.gate = ThresholdGate(PROFILE.thresholds, self.registry, PROFILE.empty_metric_policy)
        self.checks = Checks(self.registry)
        self.base_url = base_url
        self.context = FixtureContext()


_run: _Run | None = None


@events.test_start.add_listener
def _provision_fixtures(environment: Any, **_kwargs: Any) -> None:
    """Declare metrics and create the shared fixture context once."""
    global _run
    # Ramp-down lets users finish the iteration they are in.
    if not environment.stop_timeout:
        environment.stop_timeout = iteration_budget(PROFILE)
    _run = _Run(environment.host or PROFILE.base_url)
    client = ReviewServiceClient(
        _run.base_url, _run.http_metrics, timeout=PROFILE.request_timeout
    )
    try:
        _run.context = setup(client, PROFILE.sizing)
    finally:
        client.close()


@events.quitting.add_listener
def _gate_on_thresholds(environment: Any, **_kwargs: Any) -> None:
    """Print the summary and fail the process if any threshold failed."""
    if _run is None:
        return
    snapshots = _run.registry.snapshot_all()
    verdict = _run.gate.evaluate(snapshots)
    print(teardown(_run.context, snapshots, verdict, _run.checks.tallies()))
    if not verdict.passed:
        environment.process_exit_code = 1


class ReviewerUser(HttpUser):
    """One virtual user running the reviewer scenario back to back."""

    # ``--host`` still wins; Locust overwrites this when it is given.
    host = PROFILE.base_url
    # The scenario pauses between its own steps.
    wait_time = constant(0)

    def on_start(self) -> None:
        if _run is None:
            raise RuntimeError("test_start listener did not run")
        client = LocustServiceClient(
            _run.base_url,
            _run.http_metrics,
            timeout=PROFILE.request_timeout,
            session=self.client,
        )
        self.scenario = ReviewScenario(
            client,
            _run.scenario_metrics,
            _run.checks,
            rng=random.Random(),
            pause=PROFILE.step_pause,
            deactivate_probability=PROFILE.deactivate_probability,
            deactivate_span=PROFILE.deactivate_span,
        )

    @task
    def iteration(self) -> None:
        self.scenario.run_iteration(_run.context)


class StagedShape(LoadTestShape):
    """Follow the profile's stages, then stop the test."""

    stages = PROFILE.stages

    def tick(self):
        run_time = self.get_run_time()
        if run_time >= total_duration(self.stages):
            return None
        users = target_at(self.stages, run_time)
        return users, max(users, 1)

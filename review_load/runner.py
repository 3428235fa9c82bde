"""
One complete load run: setup, staged load, threshold gate, teardown.

:class:`LoadTestRunner` owns every per-run object (registry, client,
scenario, scheduler, gate) so nothing lives in module-level state and
two runs in the same process never share metrics.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass

import requests

from review_load.checks import CheckTally, Checks
from review_load.client import ReviewServiceClient
from review_load.config import LoadProfile
from review_load.lifecycle import FixtureContext, setup, teardown
from review_load.metrics import MetricsRegistry, Snapshot, declare_builtin_metrics
from review_load.scenario import ReviewScenario, ScenarioMetrics
from review_load.scheduler import SchedulerStats, StagedScheduler
from review_load.thresholds import ThresholdGate, Verdict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunResult:
    """Everything a caller needs after a run."""

    context: FixtureContext
    verdict: Verdict
    snapshots: dict[str, Snapshot]
    checks: list[CheckTally]
    scheduler: SchedulerStats
    summary: str

    @property
    def passed(self) -> bool:
        return self.verdict.passed


class LoadTestRunner:
    """
    Wires a :class:`LoadProfile` into a runnable load test.

    Construction declares all metrics and validates thresholds, so an
    invalid profile fails before any request is sent.

    Args:
        profile: Validated run settings.
        session: Optional shared ``requests`` session (tests).
        rng: Random source for the scenario.
        sleep: Sleep used for in-iteration pauses.
    """

    def __init__(
        self,
        profile: LoadProfile,
        *,
        session: requests.Session | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.profile = profile
        self.registry = MetricsRegistry()
        http_metrics, self.run_metrics = declare_builtin_metrics(self.registry)
        scenario_metrics = ScenarioMetrics.declare(self.registry)
        self.gate = ThresholdGate(
            profile.thresholds, self.registry, profile.empty_metric_policy
        )
        self.checks = Checks(self.registry)
        self.client = ReviewServiceClient(
            profile.base_url,
            http_metrics,
            timeout=profile.request_timeout,
            session=session,
        )
        self.scenario = ReviewScenario(
            self.client,
            scenario_metrics,
            self.checks,
            rng=rng,
            pause=profile.step_pause,
            sleep=sleep,
            deactivate_probability=profile.deactivate_probability,
            deactivate_span=profile.deactivate_span,
        )

    def run(self) -> RunResult:
        """Execute the run and return its verdict and summary."""
        logger.info("Load test against %s", self.profile.base_url)
        try:
            context = setup(self.client, self.profile.sizing)

            scheduler = StagedScheduler(
                self.profile.stages,
                lambda: self.scenario.run_iteration(context),
                metrics=self.run_metrics,
                tick_interval=self.profile.tick_interval,
                on_tick=self.gate.on_tick,
            )
            stats = scheduler.run()
        finally:
            self.client.close()

        snapshots = self.registry.snapshot_all()
        verdict = self.gate.evaluate(snapshots)
        tallies = self.checks.tallies()
        summary = teardown(context, snapshots, verdict, tallies)

        for failure in verdict.failures:
            logger.warning(
                "Threshold breached: %s (observed %s)",
                failure.threshold.label(),
                "no data" if failure.observed is None else f"{failure.observed:.4g}",
            )
        return RunResult(
            context=context,
            verdict=verdict,
            snapshots=snapshots,
            checks=tallies,
            scheduler=stats,
            summary=summary,
        )

"""
One iteration of virtual-user behaviour against the PR reviewer service.

Each iteration picks a baseline team and then, in order:

1. creates a brand-new two-member team,
2. opens a pull request authored by the picked team's first member,
3. if any baseline pull requests exist, looks one up and reassigns its
   first reviewer (only when it has one),
4. in 30% of iterations, deactivates a few members of the picked team
   (never the author).

A short pause follows every step so one virtual user never fires a
burst of back-to-back requests.  Steps are independent: a failed or
malformed response ends that step only.

Key Concepts Demonstrated:
- Injected random source so tests can force every branch
- Per-operation latency trends plus inline checks that report without
  gating the run
- Tolerant response parsing for the lookup-then-act reassign flow
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from review_load.checks import Checks
from review_load.client import ReviewServiceClient, member_payload
from review_load.lifecycle import FixtureContext, FixturePullRequest, FixtureTeam, unique_id
from review_load.metrics import MetricsRegistry, Trend

logger = logging.getLogger(__name__)

# Inline check bounds in milliseconds; reported per check, never gating.
DEFAULT_LATENCY_BOUNDS_MS: dict[str, float] = {
    "create_team": 300.0,
    "create_pr": 300.0,
    "reassign": 300.0,
    "deactivate": 100.0,
}

STEP_CREATE_TEAM = "create_team"
STEP_CREATE_PR = "create_pr"
STEP_REASSIGN = "reassign"
STEP_DEACTIVATE = "deactivate"


@dataclass(frozen=True)
class ScenarioMetrics:
    """Per-operation latency trends fed by the scenario."""

    create_team_duration: Trend
    create_pr_duration: Trend
    reassign_duration: Trend
    deactivate_duration: Trend

    @classmethod
    def declare(cls, registry: MetricsRegistry) -> ScenarioMetrics:
        return cls(
            create_team_duration=registry.trend("create_team_duration"),
            create_pr_duration=registry.trend("create_pr_duration"),
            reassign_duration=registry.trend("reassign_duration"),
            deactivate_duration=registry.trend("deactivate_duration"),
        )


@dataclass
class IterationReport:
    """What one iteration actually did."""

    team: str | None = None
    steps: list[str] = field(default_factory=list)
    looked_up_pr: str | None = None
    reassigned_from: str | None = None
    deactivated: tuple[str, ...] = ()


class ReviewScenario:
    """
    Executes the per-iteration user journey.

    Args:
        client: Instrumented service client.
        metrics: Latency trend handles.
        checks: Inline check recorder.
        rng: Random source for team/PR picks and the deactivate branch.
        pause: Seconds to wait after each step.
        sleep: Sleep function; only the calling thread is suspended.
        deactivate_probability: Chance that an iteration deactivates members.
        deactivate_span: How many members after the author to deactivate.
        latency_bounds: Overrides for :data:`DEFAULT_LATENCY_BOUNDS_MS`.
        clock: High-resolution clock in seconds.
    """

    def __init__(
        self,
        client: ReviewServiceClient,
        metrics: ScenarioMetrics,
        checks: Checks,
        *,
        rng: random.Random | None = None,
        pause: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
        deactivate_probability: float = 0.3,
        deactivate_span: int = 3,
        latency_bounds: Mapping[str, float] | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.client = client
        self.metrics = metrics
        self.checks = checks
        self.rng = rng or random.Random()
        self.pause = pause
        self.deactivate_probability = deactivate_probability
        self.deactivate_span = deactivate_span
        self.latency_bounds = {**DEFAULT_LATENCY_BOUNDS_MS, **(latency_bounds or {})}
        self._sleep = sleep
        self._clock = clock

    def run_iteration(self, context: FixtureContext) -> IterationReport:
        """Run one iteration against the shared fixture context."""
        report = IterationReport()
        if not context.teams:
            return report

        team = self.rng.choice(context.teams)
        report.team = team.team_name

        self._step(STEP_CREATE_TEAM, self._create_team, report)
        self._pause()

        self._step(STEP_CREATE_PR, self._create_pull_request, team, report)
        self._pause()

        if context.prs:
            pr = self.rng.choice(context.prs)
            self._step(STEP_REASSIGN, self._reassign_reviewer, pr, report)
            self._pause()

        if self.rng.random() < self.deactivate_probability:
            self._step(STEP_DEACTIVATE, self._deactivate_members, team, report)

        self._pause()
        return report

    # ---- helpers ---------------------------------------------------------

    def _pause(self) -> None:
        if self.pause > 0:
            self._sleep(self.pause)

    def _step(self, name: str, func: Callable[..., None], *args: Any) -> None:
        """Run one step; an unexpected error ends the step, not the iteration."""
        try:
            func(*args)
        except Exception:
            logger.exception("Scenario step %s raised; continuing with next step", name)

    def _bound(self, key: str) -> float:
        return self.latency_bounds[key]

    # ---- steps -----------------------------------------------------------

    def _create_team(self, report: IterationReport) -> None:
        team_name = unique_id("test-team")
        members = [
            member_payload(unique_id("u1"), "User1"),
            member_payload(unique_id("u2"), "User2"),
        ]
        result = self.client.create_team(team_name, members)
        report.steps.append(STEP_CREATE_TEAM)
        if result.transport_failed:
            self.checks.record("create team status 201", False)
            return

        self.metrics.create_team_duration.add(result.duration_ms)
        bound = self._bound("create_team")
        self.checks.run(
            result,
            {
                "create team status 201": lambda r: r.status == 201,
                f"create team duration < {bound:g}ms": lambda r: r.duration_ms < bound,
            },
        )

    def _create_pull_request(self, team: FixtureTeam, report: IterationReport) -> None:
        pr_id = unique_id("test-pr")
        result = self.client.create_pull_request(pr_id, "Test PR", team.author)
        report.steps.append(STEP_CREATE_PR)
        if result.transport_failed:
            self.checks.record("create PR status 201", False)
            return

        self.metrics.create_pr_duration.add(result.duration_ms)
        bound = self._bound("create_pr")
        self.checks.run(
            result,
            {
                "create PR status 201": lambda r: r.status == 201,
                f"create PR duration < {bound:g}ms": lambda r: r.duration_ms < bound,
            },
        )

    def _reassign_reviewer(self, pr: FixturePullRequest, report: IterationReport) -> None:
        # The reassign latency covers the lookup as well as the reassignment.
        start = self._clock()
        report.looked_up_pr = pr.pr_id
        lookup = self.client.get_pull_request(pr.pr_id)
        if lookup.status != 200:
            return

        body = lookup.json()
        if body is None:
            return
        pr_body = body.get("pr")
        if not isinstance(pr_body, dict):
            return
        reviewers = pr_body.get("assigned_reviewers")
        if not isinstance(reviewers, list) or not reviewers:
            return

        old_reviewer = str(reviewers[0])
        result = self.client.reassign_reviewer(pr.pr_id, old_reviewer)
        duration_ms = (self._clock() - start) * 1000.0
        report.steps.append(STEP_REASSIGN)
        report.reassigned_from = old_reviewer
        if result.transport_failed:
            self.checks.record("reassign status 200 or 409", False)
            return

        self.metrics.reassign_duration.add(duration_ms)
        bound = self._bound("reassign")
        self.checks.run(
            result,
            {
                "reassign status 200 or 409": lambda r: r.status in (200, 409),
                f"reassign duration < {bound:g}ms": lambda _: duration_ms < bound,
            },
        )

    def _deactivate_members(self, team: FixtureTeam, report: IterationReport) -> None:
        # Index 0 is the PR author and is never deactivated.
        user_ids = list(team.users[1 : 1 + self.deactivate_span])
        if not user_ids:
            return

        result = self.client.deactivate_members(team.team_name, user_ids)
        report.steps.append(STEP_DEACTIVATE)
        report.deactivated = tuple(user_ids)
        if result.transport_failed:
            return

        self.metrics.deactivate_duration.add(result.duration_ms)
        bound = self._bound("deactivate")
        self.checks.record(f"deactivate duration < {bound:g}ms", result.duration_ms < bound)

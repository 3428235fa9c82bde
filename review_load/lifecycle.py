"""
Setup and teardown around a load run.

Setup runs once, on the calling thread, before any virtual user starts.
It provisions baseline teams and pull requests through the real API and
returns an immutable :class:`FixtureContext` shared read-only by every
iteration.  Entities the service refuses are simply left out, so a
partially failing setup still yields a usable (smaller) context, and an
unreachable service yields an empty one.

Teardown runs once after the last virtual user has exited.  Created
data is left in place; teardown only reports.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass

from review_load.checks import CheckTally
from review_load.client import SETUP_PR, SETUP_TEAM, ReviewServiceClient, member_payload
from review_load.errors import ConfigError
from review_load.metrics import Snapshot
from review_load.summary import render_summary
from review_load.thresholds import Verdict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FixtureTeam:
    """A provisioned team; ``users[0]`` authors pull requests."""

    team_name: str
    users: tuple[str, ...]

    @property
    def author(self) -> str:
        return self.users[0]


@dataclass(frozen=True)
class FixturePullRequest:
    """A provisioned pull request and the team its author belongs to."""

    pr_id: str
    team: str


@dataclass(frozen=True)
class FixtureContext:
    """Baseline data created by setup and shared by all iterations."""

    teams: tuple[FixtureTeam, ...] = ()
    prs: tuple[FixturePullRequest, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.teams


@dataclass(frozen=True)
class FixtureSizing:
    """How much baseline data setup provisions."""

    team_count: int = 20
    members_per_team: int = 10
    pr_count: int = 50

    def __post_init__(self) -> None:
        if self.team_count < 0 or self.pr_count < 0:
            raise ConfigError("Fixture team and PR counts must be non-negative")
        if self.members_per_team < 1:
            raise ConfigError("Each fixture team needs at least one member (the author)")


def unique_id(prefix: str) -> str:
    """
    Return an identifier that will not collide across runs or threads.

    Combines a millisecond timestamp with a short random suffix so that
    back-to-back runs against the same service never reuse a name.
    """
    ts = int(time.time() * 1000)
    return f"{prefix}-{ts}-{uuid.uuid4().hex[:8]}"


def setup(client: ReviewServiceClient, sizing: FixtureSizing) -> FixtureContext:
    """
    Provision baseline teams and pull requests.

    Creates ``sizing.team_count`` teams of ``sizing.members_per_team``
    active users, then ``sizing.pr_count`` pull requests spread
    round-robin over the teams that were created, each authored by its
    team's first member.

    Args:
        client: Instrumented service client.
        sizing: Fixture sizing constants.

    Returns:
        The fixture context containing only entities answered with
        ``201 Created``.
    """
    run_id = unique_id("run")
    logger.info(
        "Provisioning %d teams x %d members and %d pull requests",
        sizing.team_count,
        sizing.members_per_team,
        sizing.pr_count,
    )

    teams: list[FixtureTeam] = []
    for t in range(sizing.team_count):
        team_name = f"load-team-{t}-{run_id}"
        user_ids = [f"user-{t}-{u}-{run_id}" for u in range(sizing.members_per_team)]
        members = [
            member_payload(user_id, f"User{t}-{u}") for u, user_id in enumerate(user_ids)
        ]
        result = client.create_team(team_name, members, name=SETUP_TEAM)
        if result.status == 201:
            teams.append(FixtureTeam(team_name=team_name, users=tuple(user_ids)))
        else:
            logger.debug("Setup team %s not created (status=%s)", team_name, result.status)

    if not teams:
        logger.warning(
            "Setup created no teams; every iteration will be a no-op (is %s reachable?)",
            client.base_url,
        )
        return FixtureContext()

    prs: list[FixturePullRequest] = []
    for i in range(sizing.pr_count):
        team = teams[i % len(teams)]
        pr_id = f"load-pr-{i}-{run_id}"
        result = client.create_pull_request(
            pr_id, f"Load Test PR {i}", team.author, name=SETUP_PR
        )
        if result.status == 201:
            prs.append(FixturePullRequest(pr_id=pr_id, team=team.team_name))
        else:
            logger.debug("Setup PR %s not created (status=%s)", pr_id, result.status)

    logger.info("Setup complete: %d teams, %d pull requests", len(teams), len(prs))
    return FixtureContext(teams=tuple(teams), prs=tuple(prs))


def teardown(
    context: FixtureContext,
    snapshots: Mapping[str, Snapshot],
    verdict: Verdict,
    checks: list[CheckTally],
) -> str:
    """
    Report the finished run; created resources are intentionally kept.

    Returns:
        The rendered end-of-run summary.
    """
    logger.info(
        "Load test finished against %d teams / %d pull requests: %s",
        len(context.teams),
        len(context.prs),
        "PASS" if verdict.passed else "FAIL",
    )
    if context.is_empty:
        logger.warning("Run used an empty fixture context; all iterations were no-ops")
    return render_summary(snapshots, verdict, checks)

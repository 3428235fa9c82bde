"""
Shared pytest fixtures for the review-load test suite.

Fixtures follow the Arrange-Act-Assert (AAA) pattern and hand every test
fresh metric state, so nothing recorded in one test leaks into another.

Key Concepts Demonstrated:
- Fixture scopes (function for metric state, session for the fake service)
- Fixture dependencies (client -> metrics -> registry)
- Test data factories built on Faker
- A real HTTP server in a background thread for integration tests
"""

from __future__ import annotations

import threading
from collections.abc import Generator

import pytest
from faker import Faker
from werkzeug.serving import make_server

from review_load.checks import Checks
from review_load.client import ReviewServiceClient
from review_load.lifecycle import FixtureContext, FixturePullRequest, FixtureTeam
from review_load.metrics import (
    HttpMetrics,
    MetricsRegistry,
    RunMetrics,
    declare_builtin_metrics,
)
from review_load.scenario import ScenarioMetrics
from tests.mocks.http import FakeSession, healthy_service_session
from tests.mocks.review_service import ReviewStore, create_app

# Initialize Faker for generating test data
fake = Faker()


# -----------------------------------------------------------------------------
# Metric Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def registry() -> MetricsRegistry:
    """A fresh registry with the built-in metrics declared."""
    registry = MetricsRegistry()
    declare_builtin_metrics(registry)
    return registry


@pytest.fixture
def http_metrics(registry: MetricsRegistry) -> HttpMetrics:
    http, _ = declare_builtin_metrics(registry)
    return http


@pytest.fixture
def run_metrics(registry: MetricsRegistry) -> RunMetrics:
    _, run = declare_builtin_metrics(registry)
    return run


@pytest.fixture
def scenario_metrics(registry: MetricsRegistry) -> ScenarioMetrics:
    return ScenarioMetrics.declare(registry)


@pytest.fixture
def checks(registry: MetricsRegistry) -> Checks:
    return Checks(registry)


# -----------------------------------------------------------------------------
# HTTP Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def fake_session() -> FakeSession:
    """A fake session where every endpoint succeeds."""
    return healthy_service_session()


@pytest.fixture
def service_client(http_metrics: HttpMetrics, fake_session: FakeSession) -> ReviewServiceClient:
    """Client that talks to ``fake_session`` instead of the network."""
    return ReviewServiceClient("http://reviewer.test", http_metrics, session=fake_session)


# -----------------------------------------------------------------------------
# Test Data Factory Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def context_factory():
    """
    Factory fixture for building fixture contexts without any HTTP.

    Example:
        def test_something(context_factory):
            context = context_factory(teams=3, members=4, prs=5)
            assert len(context.prs) == 5
    """

    def _create_context(teams: int = 1, members: int = 10, prs: int = 1) -> FixtureContext:
        created = tuple(
            FixtureTeam(
                team_name=f"team-{t}-{fake.slug()}",
                users=tuple(f"u{t}-{u}-{fake.user_name()}" for u in range(members)),
            )
            for t in range(teams)
        )
        pull_requests = tuple(
            FixturePullRequest(pr_id=f"pr-{i}-{fake.uuid4()}", team=created[i % teams].team_name)
            for i in range(prs if teams else 0)
        )
        return FixtureContext(teams=created, prs=pull_requests)

    return _create_context


# -----------------------------------------------------------------------------
# Fake Service Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(scope="session")
def review_store() -> ReviewStore:
    return ReviewStore()


@pytest.fixture(scope="session")
def live_fake_service(review_store: ReviewStore) -> Generator[str, None, None]:
    """
    Serve the fake reviewer service over real HTTP for the whole session.

    The server binds an ephemeral port and runs in a daemon thread, so
    tests exercise the real ``requests`` transport end to end.

    Yields:
        str: Base URL of the running server.
    """
    server = make_server("127.0.0.1", 0, create_app(review_store), threaded=True)
    thread = threading.Thread(target=server.serve_forever, name="fake-reviewer", daemon=True)
    thread.start()

    yield f"http://127.0.0.1:{server.server_port}"

    server.shutdown()
    thread.join(timeout=5)


@pytest.fixture
def fake_service_url(live_fake_service: str, review_store: ReviewStore) -> str:
    """Base URL of the fake service with its data cleared for this test."""
    review_store.reset()
    return live_fake_service

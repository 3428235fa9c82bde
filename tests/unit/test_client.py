"""
Unit tests for the instrumented service client.
"""

from __future__ import annotations

import threading

import pytest
import requests

from review_load.client import (
    CREATE_TEAM,
    REASSIGN,
    ReviewServiceClient,
    _safe_json,
    member_payload,
)
from tests.mocks.http import FakeResponse, FakeSession


pytestmark = pytest.mark.unit


@pytest.fixture
def client_for(http_metrics):
    def _make(session: FakeSession) -> ReviewServiceClient:
        return ReviewServiceClient("http://reviewer.test/", http_metrics, session=session, timeout=3)

    return _make


class TestSafeJson:

    def test_returns_dict_bodies(self):
        assert _safe_json(FakeResponse(200, {"ok": True})) == {"ok": True}

    @pytest.mark.parametrize(
        "response",
        [FakeResponse(502, malformed=True), FakeResponse(200, [1, 2]), FakeResponse(200, None)],
    )
    def test_non_object_bodies_are_none(self, response):
        assert _safe_json(response) is None


class TestRequest:

    def test_success_records_all_http_metrics(self, client_for, registry):
        # Arrange
        registry.declare_submetric("http_req_failed{name:CreateTeam}")
        session = FakeSession().route("POST", "/team/add", FakeResponse(201, {}))
        client = client_for(session)

        # Act
        result = client.create_team("team-x", [member_payload("u1", "User1")])

        # Assert
        assert result.status == 201
        assert result.ok
        assert result.name == CREATE_TEAM
        assert not result.transport_failed
        snapshots = registry.snapshot_all()
        assert snapshots["http_reqs"].total == 1
        assert snapshots["http_req_duration"].count == 1
        assert snapshots["http_req_failed"].rate == 0.0
        assert snapshots["http_req_failed{name:CreateTeam}"].total == 1

    def test_unexpected_status_is_failed_request(self, client_for, registry):
        session = FakeSession().route("POST", "/team/add", FakeResponse(409, {}))

        result = client_for(session).create_team("team-x", [])

        assert not result.ok
        assert registry.snapshot("http_req_failed").rate == 1.0
        assert registry.snapshot("http_req_duration").count == 1

    def test_transport_failure_is_returned_not_raised(self, client_for, registry):
        # Arrange
        session = FakeSession().route(
            "POST", "/pullRequest/reassign", requests.Timeout("read timed out")
        )

        # Act
        result = client_for(session).reassign_reviewer("pr-1", "u5")

        # Assert
        assert result.status is None
        assert result.transport_failed
        assert result.name == REASSIGN
        assert "timed out" in result.error
        assert result.json() is None
        assert registry.snapshot("http_req_failed").rate == 1.0
        assert registry.snapshot("http_reqs").total == 1
        assert registry.snapshot("http_req_duration").count == 0

    @pytest.mark.parametrize("status", [200, 409])
    def test_reassign_accepts_ok_and_conflict(self, client_for, status):
        session = FakeSession().route("POST", "/pullRequest/reassign", FakeResponse(status, {}))

        assert client_for(session).reassign_reviewer("pr-1", "u5").ok

    def test_deactivate_accepts_any_status(self, client_for):
        session = FakeSession().route("POST", "/team/deactivateMembers", FakeResponse(500, {}))

        assert client_for(session).deactivate_members("team-x", ["u1"]).ok

    def test_get_pull_request_sends_query_and_parses_body(self, client_for):
        body = {"pr": {"pull_request_id": "pr-1", "assigned_reviewers": ["u2"]}}
        session = FakeSession().route("GET", "/pullRequest/get", FakeResponse(200, body))

        result = client_for(session).get_pull_request("pr-1")

        assert result.json() == body
        assert session.calls[0].params == {"pull_request_id": "pr-1"}

    def test_base_url_trailing_slash_and_timeout(self, client_for):
        session = FakeSession().route("POST", "/pullRequest/create", FakeResponse(201, {}))

        client_for(session).create_pull_request("pr-1", "Test PR", "u0")

        call = session.calls[0]
        assert call.path == "/pullRequest/create"
        assert call.extra["timeout"] == 3
        assert call.extra["headers"]["Content-Type"] == "application/json"
        assert call.json == {
            "pull_request_id": "pr-1",
            "pull_request_name": "Test PR",
            "author_id": "u0",
        }


class TestSessions:

    def test_each_thread_gets_its_own_session(self, http_metrics, monkeypatch):
        created = []

        class RecordingSession(FakeSession):
            def __init__(self):
                super().__init__()
                self.closed = False
                created.append(self)

            def close(self):
                self.closed = True

        monkeypatch.setattr("review_load.client.requests.Session", RecordingSession)
        client = ReviewServiceClient("http://reviewer.test", http_metrics)

        threads = [threading.Thread(target=client.get_pull_request, args=("pr-1",)) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        client.close()

        assert len(created) == 3
        assert all(session.closed for session in created)

    def test_shared_session_is_not_closed(self, http_metrics):
        session = FakeSession()
        session.close = lambda: pytest.fail("shared session must stay open")
        client = ReviewServiceClient("http://reviewer.test", http_metrics, session=session)

        client.get_pull_request("pr-1")
        client.close()

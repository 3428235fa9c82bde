"""
Instrumented HTTP client for the PR reviewer service.

Wraps the five endpoints the load scenario touches.  Every request is
timed with a wall clock and recorded into the built-in HTTP metrics
(``http_reqs``, ``http_req_duration``, ``http_req_failed``) tagged with
the operation name, so thresholds such as
``http_req_failed{name:CreateTeam}`` can target a single operation.

Transport problems (connection refused, timeouts) never raise out of
this module: they come back as a :class:`RequestResult` with no status
and are counted as failed requests.

Key Concepts Demonstrated:
- One ``requests.Session`` per worker thread for connection reuse
  without sharing a session across threads
- Per-operation expected-status sets (``409`` is acceptable for reassign)
- A single ``_send`` seam that the Locust runner overrides
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from typing import Any

import requests

from review_load.metrics import HttpMetrics

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}

# Operation names used as the ``name`` tag on HTTP metrics.
CREATE_TEAM = "CreateTeam"
CREATE_PR = "CreatePR"
GET_PR = "GetPR"
REASSIGN = "Reassign"
DEACTIVATE = "Deactivate"
SETUP_TEAM = "SetupTeam"
SETUP_PR = "SetupPR"

CREATED = frozenset({201})
OK = frozenset({200})
OK_OR_CONFLICT = frozenset({200, 409})


def _safe_json(response: Any) -> dict[str, Any] | None:
    """
    Return response JSON as a dict, or ``None`` if it is missing or malformed.

    Non-JSON bodies show up on 5xx errors and proxy timeouts; treating
    them as "no body" keeps a parse error from escaping into the
    scenario step that issued the request.
    """
    try:
        data = response.json()
    except ValueError:
        return None

    if isinstance(data, dict):
        return data
    return None


@dataclass(frozen=True)
class RequestResult:
    """
    Outcome of one instrumented request.

    Attributes:
        name: Operation name used as the metrics tag.
        status: HTTP status code, or ``None`` on transport failure.
        duration_ms: Wall-clock time spent on the request.
        ok: Whether the status was in the operation's expected set.
        error: Transport error message, if any.
        response: The underlying response object, if one was received.
    """

    name: str
    status: int | None
    duration_ms: float
    ok: bool
    error: str | None = None
    response: Any = field(default=None, repr=False, compare=False)

    @property
    def transport_failed(self) -> bool:
        return self.status is None

    def json(self) -> dict[str, Any] | None:
        """Return the JSON object body, or ``None`` if absent or malformed."""
        if self.response is None:
            return None
        return _safe_json(self.response)


def member_payload(user_id: str, username: str, is_active: bool = True) -> dict[str, Any]:
    """Build one ``members`` entry for the create-team request."""
    return {"user_id": user_id, "username": username, "is_active": is_active}


class ReviewServiceClient:
    """
    Client for the team / pull-request / reviewer endpoints.

    Args:
        base_url: Service root, e.g. ``http://localhost:8080``.
        http_metrics: Built-in HTTP metric handles to record into.
        timeout: Per-request timeout in seconds.
        session: Optional session shared by all threads (tests, Locust).
            When omitted each thread lazily creates its own.
        clock: High-resolution clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        base_url: str,
        http_metrics: HttpMetrics,
        *,
        timeout: float = 10.0,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._metrics = http_metrics
        self._clock = clock
        self._shared_session = session
        self._local = threading.local()
        self._owned_sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()

    # ---- plumbing --------------------------------------------------------

    def _session(self) -> requests.Session:
        if self._shared_session is not None:
            return self._shared_session

        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
            with self._sessions_lock:
                self._owned_sessions.append(session)
        return session

    def _send(
        self,
        method: str,
        url: str,
        *,
        name: str,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Issue the request; subclasses may add runner-specific kwargs."""
        return self._session().request(
            method,
            url,
            params=params,
            json=json,
            headers=JSON_HEADERS,
            timeout=self.timeout,
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        name: str,
        expected: Collection[int] | None,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
    ) -> RequestResult:
        """
        Send one request and record it into the HTTP metrics.

        Args:
            method: HTTP verb.
            path: Path relative to ``base_url``.
            name: Operation name for the ``name`` tag.
            expected: Status codes that count as success; ``None`` accepts
                any status (only transport failures count as failed).
            params: Query string parameters.
            json: JSON-serialisable request body.

        Returns:
            A :class:`RequestResult`; never raises for transport errors.
        """
        url = f"{self.base_url}{path}"
        start = self._clock()
        try:
            response = self._send(method, url, name=name, params=params, json=json)
        except requests.RequestException as exc:
            duration_ms = (self._clock() - start) * 1000.0
            tags = {"name": name, "method": method, "status": "0"}
            self._metrics.reqs.add(1, tags=tags)
            self._metrics.failed.add(True, tags=tags)
            logger.debug("%s %s failed after %.1fms: %s", method, url, duration_ms, exc)
            return RequestResult(
                name=name, status=None, duration_ms=duration_ms, ok=False, error=str(exc)
            )

        duration_ms = (self._clock() - start) * 1000.0
        status = response.status_code
        ok = expected is None or status in expected
        tags = {"name": name, "method": method, "status": str(status)}
        self._metrics.reqs.add(1, tags=tags)
        self._metrics.duration.add(duration_ms, tags=tags)
        self._metrics.failed.add(not ok, tags=tags)
        if not ok:
            logger.debug("%s %s -> unexpected status %s", method, url, status)
        return RequestResult(
            name=name, status=status, duration_ms=duration_ms, ok=ok, response=response
        )

    def close(self) -> None:
        """Close the sessions this client created."""
        with self._sessions_lock:
            sessions, self._owned_sessions = self._owned_sessions, []
        for session in sessions:
            session.close()

    # ---- endpoints -------------------------------------------------------

    def create_team(
        self, team_name: str, members: list[dict[str, Any]], *, name: str = CREATE_TEAM
    ) -> RequestResult:
        """POST ``/team/add``; success is ``201``."""
        return self.request(
            "POST",
            "/team/add",
            name=name,
            expected=CREATED,
            json={"team_name": team_name, "members": members},
        )

    def create_pull_request(
        self, pr_id: str, pr_name: str, author_id: str, *, name: str = CREATE_PR
    ) -> RequestResult:
        """POST ``/pullRequest/create``; success is ``201``."""
        return self.request(
            "POST",
            "/pullRequest/create",
            name=name,
            expected=CREATED,
            json={
                "pull_request_id": pr_id,
                "pull_request_name": pr_name,
                "author_id": author_id,
            },
        )

    def get_pull_request(self, pr_id: str) -> RequestResult:
        """GET ``/pullRequest/get``; success is ``200``."""
        return self.request(
            "GET",
            "/pullRequest/get",
            name=GET_PR,
            expected=OK,
            params={"pull_request_id": pr_id},
        )

    def reassign_reviewer(self, pr_id: str, old_user_id: str) -> RequestResult:
        """POST ``/pullRequest/reassign``; ``200`` and ``409`` both succeed."""
        return self.request(
            "POST",
            "/pullRequest/reassign",
            name=REASSIGN,
            expected=OK_OR_CONFLICT,
            json={"pull_request_id": pr_id, "old_user_id": old_user_id},
        )

    def deactivate_members(self, team_name: str, user_ids: list[str]) -> RequestResult:
        """POST ``/team/deactivateMembers``; any status is accepted."""
        return self.request(
            "POST",
            "/team/deactivateMembers",
            name=DEACTIVATE,
            expected=None,
            json={"team_name": team_name, "user_ids": user_ids},
        )

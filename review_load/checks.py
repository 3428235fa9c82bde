"""
Inline checks: named pass/fail assertions reported per check.

A check never fails the run on its own.  Each outcome is recorded into
the shared ``checks`` Rate (tagged with the check name) and tallied per
name so the end-of-run summary can show, for example, how often
``create team duration < 300ms`` held.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from review_load.metrics import MetricsRegistry, Rate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckTally:
    """Pass/fail counts for one named check."""

    name: str
    passes: int
    fails: int

    @property
    def total(self) -> int:
        return self.passes + self.fails


class Checks:
    """Thread-safe recorder for named checks."""

    def __init__(self, registry: MetricsRegistry):
        self._rate: Rate = registry.rate("checks")
        self._lock = threading.Lock()
        self._tallies: dict[str, list[int]] = {}

    def record(self, name: str, passed: bool) -> bool:
        """Record one outcome for check *name* and return it."""
        passed = bool(passed)
        self._rate.add(passed, tags={"check": name})
        with self._lock:
            tally = self._tallies.setdefault(name, [0, 0])
            tally[0 if passed else 1] += 1
        if not passed:
            logger.debug("Check failed: %s", name)
        return passed

    def run(self, subject: Any, predicates: Mapping[str, Callable[[Any], bool]]) -> bool:
        """
        Evaluate every predicate against *subject* and record each outcome.

        Returns:
            ``True`` only if all predicates passed.
        """
        results = [self.record(name, predicate(subject)) for name, predicate in predicates.items()]
        return all(results)

    def tallies(self) -> list[CheckTally]:
        with self._lock:
            return [
                CheckTally(name=name, passes=counts[0], fails=counts[1])
                for name, counts in self._tallies.items()
            ]

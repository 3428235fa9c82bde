"""
Threshold expressions and the pass/fail gate.

A threshold binds a metric (optionally a tagged sub-metric) to a
comparison against one of its statistics::

    http_req_duration:              p(95) < 300
    http_req_failed{name:Reassign}: rate < 0.1
    deactivate_duration:            p(95) < 100ms

Latency bounds are milliseconds; ``ms`` and ``s`` suffixes are accepted
and converted.  The run passes only if every threshold passes.

A threshold whose metric never received a sample has status
``NO_DATA``.  By default that counts as a failure (a gate that never saw
traffic must not report green); with the ``skip`` policy it is reported
but left out of the verdict.

Key Concepts Demonstrated:
- Declaration-time validation (unknown metrics, stats that do not fit
  the metric kind) so mistakes surface before load starts
- Pure evaluation over immutable snapshots
- Optional abort-on-fail thresholds checked while the run is in progress
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from review_load.errors import ConfigError, ThresholdSyntaxError
from review_load.metrics import SUPPORTED_STATS, MetricsRegistry, Snapshot
from review_load.scheduler import parse_duration

logger = logging.getLogger(__name__)

_EXPRESSION_RE = re.compile(
    r"""^\s*
    (?P<stat>[a-z]+)
    (?:\(\s*(?P<argument>\d+(?:\.\d+)?)\s*\))?
    \s*(?P<op><=|>=|==|!=|<|>)\s*
    (?P<bound>-?\d+(?:\.\d+)?)
    \s*(?P<unit>ms|s)?
    \s*$""",
    re.VERBOSE,
)

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_UNIT_TO_MS = {None: 1.0, "ms": 1.0, "s": 1000.0}


class EmptyMetricPolicy(str, Enum):
    """How a threshold over a metric with no samples affects the verdict."""

    FAIL = "fail"
    SKIP = "skip"

    @classmethod
    def parse(cls, value: str | EmptyMetricPolicy) -> EmptyMetricPolicy:
        try:
            return cls(value)
        except ValueError as exc:
            raise ConfigError(
                f"empty_metric_policy must be 'fail' or 'skip', got {value!r}"
            ) from exc


@dataclass(frozen=True)
class Condition:
    """Parsed ``<stat>[(arg)] <op> <bound>`` expression."""

    stat: str
    argument: float | None
    op: str
    bound: float

    def holds(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.bound)

    def label(self) -> str:
        stat = f"p({self.argument:g})" if self.stat == "p" else self.stat
        return f"{stat}{self.op}{self.bound:g}"


def parse_expression(text: str) -> Condition:
    """
    Parse a threshold expression such as ``p(99.9) < 300ms``.

    Raises:
        ThresholdSyntaxError: If the text is not a valid expression.
    """
    match = _EXPRESSION_RE.match(text)
    if match is None:
        raise ThresholdSyntaxError(f"Invalid threshold expression: {text!r}")

    stat = match.group("stat")
    raw_argument = match.group("argument")
    if stat == "p":
        if raw_argument is None:
            raise ThresholdSyntaxError(f"p() needs a percentile in {text!r}")
        argument: float | None = float(raw_argument)
        if not 0.0 <= argument <= 100.0:
            raise ThresholdSyntaxError(f"Percentile out of range in {text!r}")
    elif raw_argument is not None:
        raise ThresholdSyntaxError(f"Only p() takes an argument: {text!r}")
    else:
        argument = None

    bound = float(match.group("bound")) * _UNIT_TO_MS[match.group("unit")]
    return Condition(stat=stat, argument=argument, op=match.group("op"), bound=bound)


@dataclass(frozen=True)
class Threshold:
    """
    One pass/fail bound on a metric statistic.

    Attributes:
        metric_name: Metric or sub-metric key, e.g. ``http_req_failed{name:CreatePR}``.
        expression: Expression text as written.
        condition: Parsed form of ``expression``.
        abort_on_fail: Stop the run as soon as this threshold fails.
        delay_abort_eval: Seconds into the run before abort checks begin.
    """

    metric_name: str
    expression: str
    condition: Condition
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    @classmethod
    def parse(
        cls,
        metric_name: str,
        expression: str,
        *,
        abort_on_fail: bool = False,
        delay_abort_eval: Any = 0.0,
    ) -> Threshold:
        return cls(
            metric_name=metric_name,
            expression=expression,
            condition=parse_expression(expression),
            abort_on_fail=abort_on_fail,
            delay_abort_eval=parse_duration(delay_abort_eval),
        )

    def label(self) -> str:
        return f"{self.metric_name}: {self.condition.label()}"


def parse_thresholds(declarations: Mapping[str, Iterable[Any]]) -> list[Threshold]:
    """
    Build thresholds from a ``{metric: [expression, ...]}`` mapping.

    Each entry is either an expression string or a mapping with a
    ``threshold`` key plus optional ``abort_on_fail`` and
    ``delay_abort_eval`` (camel-case ``abortOnFail`` / ``delayAbortEval``
    are accepted too).

    Raises:
        ThresholdSyntaxError: On a malformed entry or expression.
    """
    thresholds: list[Threshold] = []
    for metric_name, entries in declarations.items():
        if isinstance(entries, (str, dict)):
            entries = [entries]
        for entry in entries:
            if isinstance(entry, str):
                thresholds.append(Threshold.parse(metric_name, entry))
                continue
            if not isinstance(entry, dict) or "threshold" not in entry:
                raise ThresholdSyntaxError(
                    f"Threshold for {metric_name!r} must be a string or have a 'threshold' key"
                )
            thresholds.append(
                Threshold.parse(
                    metric_name,
                    str(entry["threshold"]),
                    abort_on_fail=bool(entry.get("abort_on_fail", entry.get("abortOnFail", False))),
                    delay_abort_eval=entry.get("delay_abort_eval", entry.get("delayAbortEval", 0)),
                )
            )
    return thresholds


class ThresholdStatus(str, Enum):
    """Status shown per threshold in the summary and JSON export."""

    PASSED = "passed"
    FAILED = "failed"
    NO_DATA = "no_data"


@dataclass(frozen=True)
class ThresholdResult:
    """Outcome of one threshold; ``observed`` is ``None`` when there was no data."""

    threshold: Threshold
    status: ThresholdStatus
    observed: float | None
    counts_as_failure: bool


@dataclass(frozen=True)
class Verdict:
    """Conjunction of all threshold results."""

    results: tuple[ThresholdResult, ...]
    empty_metric_policy: EmptyMetricPolicy

    @property
    def passed(self) -> bool:
        return not any(result.counts_as_failure for result in self.results)

    @property
    def failures(self) -> list[ThresholdResult]:
        return [result for result in self.results if result.counts_as_failure]


def evaluate_threshold(
    threshold: Threshold,
    snapshot: Snapshot | None,
    policy: EmptyMetricPolicy = EmptyMetricPolicy.FAIL,
) -> ThresholdResult:
    """Evaluate one threshold against a metric snapshot without mutating it."""
    observed = None
    if snapshot is not None and snapshot.has_data:
        observed = snapshot.stat(threshold.condition.stat, threshold.condition.argument)

    if observed is None:
        return ThresholdResult(
            threshold=threshold,
            status=ThresholdStatus.NO_DATA,
            observed=None,
            counts_as_failure=policy is EmptyMetricPolicy.FAIL,
        )

    passed = threshold.condition.holds(observed)
    return ThresholdResult(
        threshold=threshold,
        status=ThresholdStatus.PASSED if passed else ThresholdStatus.FAILED,
        observed=observed,
        counts_as_failure=not passed,
    )


def evaluate_thresholds(
    thresholds: Iterable[Threshold],
    snapshots: Mapping[str, Snapshot],
    policy: EmptyMetricPolicy = EmptyMetricPolicy.FAIL,
) -> Verdict:
    """Evaluate every threshold; the verdict passes only if all of them do."""
    results = tuple(
        evaluate_threshold(threshold, snapshots.get(threshold.metric_name), policy)
        for threshold in thresholds
    )
    return Verdict(results=results, empty_metric_policy=policy)


class ThresholdGate:
    """
    Thresholds bound to a registry.

    Construction declares every referenced sub-metric and checks that
    each statistic exists for the metric's kind, so configuration errors
    surface before any load is generated.

    Raises:
        UnknownMetricError: A threshold names an undeclared metric.
        ThresholdSyntaxError: A statistic does not apply to the metric kind.
    """

    def __init__(
        self,
        thresholds: Iterable[Threshold],
        registry: MetricsRegistry,
        empty_metric_policy: EmptyMetricPolicy | str = EmptyMetricPolicy.FAIL,
    ):
        self._registry = registry
        self.policy = EmptyMetricPolicy.parse(empty_metric_policy)

        bound: list[Threshold] = []
        for threshold in thresholds:
            metric = registry.declare_submetric(threshold.metric_name)
            if threshold.condition.stat not in SUPPORTED_STATS[metric.kind]:
                raise ThresholdSyntaxError(
                    f"{threshold.expression!r} does not apply to {metric.kind.value} "
                    f"metric {metric.name!r}"
                )
            bound.append(replace(threshold, metric_name=metric.name))
        self.thresholds: tuple[Threshold, ...] = tuple(bound)

    @property
    def has_abort_thresholds(self) -> bool:
        return any(threshold.abort_on_fail for threshold in self.thresholds)

    def evaluate(self, snapshots: Mapping[str, Snapshot] | None = None) -> Verdict:
        if snapshots is None:
            snapshots = self._registry.snapshot_all()
        return evaluate_thresholds(self.thresholds, snapshots, self.policy)

    def should_abort(self, snapshots: Mapping[str, Snapshot], elapsed: float) -> bool:
        """
        Return ``True`` if any abort-on-fail threshold is failing now.

        Thresholds without data never trigger an abort mid-run.
        """
        for threshold in self.thresholds:
            if not threshold.abort_on_fail or elapsed < threshold.delay_abort_eval:
                continue
            result = evaluate_threshold(
                threshold, snapshots.get(threshold.metric_name), EmptyMetricPolicy.SKIP
            )
            if result.status is ThresholdStatus.FAILED:
                logger.warning(
                    "Threshold %s failed at %.1fs (observed %.4g); aborting",
                    threshold.label(),
                    elapsed,
                    result.observed,
                )
                return True
        return False

    def on_tick(self, elapsed: float) -> bool:
        """Scheduler hook: evaluate abort thresholds against live metrics."""
        names = {
            threshold.metric_name
            for threshold in self.thresholds
            if threshold.abort_on_fail and elapsed >= threshold.delay_abort_eval
        }
        if not names:
            return False
        # Snapshot only the metrics due for an abort check.
        snapshots = {name: self._registry.snapshot(name) for name in names}
        return self.should_abort(snapshots, elapsed)

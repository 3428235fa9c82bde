"""
End-of-run reporting: a fixed-width text table for CI logs and a JSON
export of the same data.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from review_load.checks import CheckTally
from review_load.metrics import (
    CounterSnapshot,
    GaugeSnapshot,
    RateSnapshot,
    Snapshot,
    TrendSnapshot,
)
from review_load.thresholds import ThresholdStatus, Verdict

_WIDTH = 78


def _fmt(value: float | None, suffix: str = "") -> str:
    if value is None:
        return "-"
    return f"{value:.2f}{suffix}"


def describe_snapshot(snapshot: Snapshot) -> str:
    """One-line human summary of a metric snapshot."""
    if isinstance(snapshot, TrendSnapshot):
        return (
            f"avg={_fmt(snapshot.stat('avg'), 'ms')} "
            f"med={_fmt(snapshot.stat('med'), 'ms')} "
            f"p(95)={_fmt(snapshot.percentile(95), 'ms')} "
            f"max={_fmt(snapshot.stat('max'), 'ms')} "
            f"count={snapshot.count}"
        )
    if isinstance(snapshot, RateSnapshot):
        rate = snapshot.rate
        shown = "-" if rate is None else f"{rate * 100:.2f}%"
        return f"{shown} ({snapshot.passes} of {snapshot.total})"
    if isinstance(snapshot, CounterSnapshot):
        return f"{snapshot.total:g} ({_fmt(snapshot.stat('rate'))}/s)"
    if isinstance(snapshot, GaugeSnapshot):
        return (
            f"value={_fmt(snapshot.value)} min={_fmt(snapshot.minimum)} "
            f"max={_fmt(snapshot.maximum)}"
        )
    raise TypeError(f"Unsupported snapshot type: {type(snapshot).__name__}")


def _threshold_status(status: ThresholdStatus, counts_as_failure: bool) -> str:
    if status is ThresholdStatus.PASSED:
        return "PASS"
    if status is ThresholdStatus.FAILED:
        return "FAIL"
    return "NO DATA" if counts_as_failure else "SKIP"


def render_summary(
    snapshots: Mapping[str, Snapshot],
    verdict: Verdict,
    checks: list[CheckTally],
) -> str:
    """Render metrics, checks and thresholds as a text table."""
    lines = ["Load Test Summary", "=" * _WIDTH]

    lines.append(f"{'Metric':<40}Value")
    lines.append("-" * _WIDTH)
    for name in sorted(snapshots):
        snapshot = snapshots[name]
        if not snapshot.has_data:
            continue
        lines.append(f"{name:<40}{describe_snapshot(snapshot)}")

    if checks:
        lines.append("")
        lines.append(f"{'Check':<46}{'Passes':>10}{'Fails':>10}{'Rate':>12}")
        lines.append("-" * _WIDTH)
        for tally in checks:
            rate = tally.passes / tally.total * 100 if tally.total else 0.0
            lines.append(f"{tally.name:<46}{tally.passes:>10}{tally.fails:>10}{rate:>11.2f}%")

    lines.append("")
    lines.append(f"{'Threshold':<52}{'Actual':>14}{'Status':>12}")
    lines.append("-" * _WIDTH)
    for result in verdict.results:
        status = _threshold_status(result.status, result.counts_as_failure)
        lines.append(f"{result.threshold.label():<52}{_fmt(result.observed):>14}{status:>12}")

    lines.append("-" * _WIDTH)
    lines.append(f"Overall: {'PASS' if verdict.passed else 'FAIL'}")
    return "\n".join(lines)


def summary_dict(
    snapshots: Mapping[str, Snapshot],
    verdict: Verdict,
    checks: list[CheckTally],
) -> dict[str, Any]:
    """Build a JSON-serialisable summary."""
    return {
        "passed": verdict.passed,
        "empty_metric_policy": verdict.empty_metric_policy.value,
        "metrics": {name: snapshot.as_dict() for name, snapshot in sorted(snapshots.items())},
        "checks": {
            tally.name: {"passes": tally.passes, "fails": tally.fails} for tally in checks
        },
        "thresholds": [
            {
                "metric": result.threshold.metric_name,
                "expression": result.threshold.expression,
                "status": result.status.value,
                "observed": result.observed,
                "counts_as_failure": result.counts_as_failure,
            }
            for result in verdict.results
        ],
    }


def write_summary_json(path: Path, summary: dict[str, Any]) -> None:
    """Write *summary* to *path* as indented JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(summary, handle, indent=2, sort_keys=True)

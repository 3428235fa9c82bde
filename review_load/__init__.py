"""
Review Load: load generation and SLA gating for the PR reviewer service.

This package drives synthetic traffic against the team / pull-request /
reviewer-assignment HTTP service under a staged concurrency profile,
records latency and failure-rate metrics for every operation, and
decides pass/fail against declared thresholds.

Key Concepts Demonstrated:
- Staged virtual-user ramping with cooperative worker retirement
- Thread-safe metric aggregation (trends, rates, counters, gauges)
- Declarative threshold expressions evaluated as a CI gate
- Dependency-injected metrics, HTTP sessions and random sources so every
  branch of the scenario is testable
"""

from __future__ import annotations

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

__version__ = "1.0.0"

"""
Staged virtual-user scheduler.

A run is described by an ordered list of :class:`Stage` objects.  Within
a stage the target number of virtual users moves linearly from the
previous stage's target (zero before the first stage) to the stage's own
target.  A controller thread recomputes that target every tick and
reconciles the live worker count toward it:

- below target: new worker threads are started;
- above target: nothing is killed.  Each worker checks, between
  iterations only, whether it is surplus and retires itself.

State machine::

    IDLE -> RAMPING -> DRAINING -> DONE

``DRAINING`` begins once the last stage has elapsed (or :meth:`stop` was
called); ``DONE`` is reached only after every worker has exited.

Key Concepts Demonstrated:
- Cooperative cancellation: workers observe stop/retire signals between
  iterations, so an in-flight iteration always completes
- A single lock-protected "live vs target" pair instead of per-thread
  kill switches
- Injectable clock and tick hook for deterministic tests and
  continuous threshold evaluation
"""

from __future__ import annotations

import logging
import math
import re
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from review_load.errors import ConfigError
from review_load.metrics import RunMetrics

logger = logging.getLogger(__name__)

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


def parse_duration(value: Any) -> float:
    """
    Convert a duration into seconds.

    Accepts numbers (seconds) and strings made of ``<number><unit>``
    parts, where unit is ``ms``, ``s``, ``m`` or ``h``, for example ``"30s"``,
    ``"1m30s"``, ``"500ms"``.

    Raises:
        ConfigError: If the value is negative or cannot be parsed.
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().replace(" ", "")
        if not text:
            raise ConfigError("Empty duration")
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART_RE.findall(text)
            if "".join(number + unit for number, unit in parts) != text:
                raise ConfigError(f"Invalid duration: {value!r}") from None
            multipliers = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
            seconds = sum(float(number) * multipliers[unit] for number, unit in parts)

    if seconds < 0 or math.isnan(seconds):
        raise ConfigError(f"Duration must be non-negative: {value!r}")
    return seconds


@dataclass(frozen=True)
class Stage:
    """Ramp to ``target`` virtual users over ``duration`` seconds."""

    duration: float
    target: int

    def __post_init__(self) -> None:
        if self.duration < 0:
            raise ConfigError(f"Stage duration must be non-negative, got {self.duration}")
        if self.target < 0:
            raise ConfigError(f"Stage target must be non-negative, got {self.target}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Stage:
        """Build a stage from ``{"duration": "30s", "target": 5}``."""
        try:
            duration = parse_duration(data["duration"])
            target = int(data["target"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid stage definition: {data!r}") from exc
        return cls(duration=duration, target=target)


def total_duration(stages: Sequence[Stage]) -> float:
    return sum(stage.duration for stage in stages)


def stage_index_at(stages: Sequence[Stage], elapsed: float) -> int:
    """Return the index of the stage active at *elapsed* seconds."""
    stage_start = 0.0
    for index, stage in enumerate(stages):
        if elapsed < stage_start + stage.duration:
            return index
        stage_start += stage.duration
    return len(stages) - 1


def target_at(stages: Sequence[Stage], elapsed: float) -> int:
    """
    Return the target virtual-user count at *elapsed* seconds into the run.

    Linear interpolation within the active stage, floored to an integer.
    Zero-duration stages jump straight to their target; after the final
    stage the final target holds.
    """
    if not stages:
        return 0

    previous_target = 0
    stage_start = 0.0
    for stage in stages:
        stage_end = stage_start + stage.duration
        if elapsed < stage_end:
            progress = (max(elapsed, stage_start) - stage_start) / stage.duration
            value = previous_target + (stage.target - previous_target) * progress
            return max(0, math.floor(value + 1e-9))
        previous_target = stage.target
        stage_start = stage_end
    return stages[-1].target


class SchedulerState(str, Enum):
    """Lifecycle of a scheduler run; states only move forward."""

    IDLE = "idle"
    RAMPING = "ramping"
    DRAINING = "draining"
    DONE = "done"


@dataclass(frozen=True)
class SchedulerStats:
    """Totals reported once the scheduler reaches ``DONE``."""

    iterations: int
    failed_iterations: int
    max_live_workers: int
    duration_seconds: float
    stopped_early: bool


class StagedScheduler:
    """
    Runs ``iteration`` in a varying number of worker threads.

    Args:
        stages: Ordered ramp profile.
        iteration: Zero-argument callable executed repeatedly by each
            worker.  Exceptions are logged and counted, never propagated.
        metrics: Optional run metric handles (``iterations``,
            ``iteration_duration``, ``vus``).
        tick_interval: Seconds between controller reconciliations.
        clock: Monotonic clock in seconds.
        on_tick: Called with the elapsed seconds after each
            reconciliation; returning ``True`` requests an early stop.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        iteration: Callable[[], Any],
        *,
        metrics: RunMetrics | None = None,
        tick_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        on_tick: Callable[[float], bool | None] | None = None,
    ):
        if not stages:
            raise ConfigError("At least one stage is required")
        if tick_interval <= 0:
            raise ConfigError("tick_interval must be positive")

        self.stages = tuple(stages)
        self._iteration = iteration
        self._metrics = metrics
        self._tick_interval = tick_interval
        self._clock = clock
        self._on_tick = on_tick

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []
        self._live = 0
        self._target = 0
        self._max_live = 0
        self._iterations = 0
        self._failed_iterations = 0
        self._stopped_early = False
        self._stage_index = -1
        self.state = SchedulerState.IDLE

    # ---- public ----------------------------------------------------------

    @property
    def live_workers(self) -> int:
        with self._lock:
            return self._live

    @property
    def target(self) -> int:
        with self._lock:
            return self._target

    @property
    def stage_index(self) -> int:
        return self._stage_index

    def stop(self) -> None:
        """Ask every worker to exit after its current iteration."""
        if not self._stop.is_set():
            self._stopped_early = self.state is SchedulerState.RAMPING
            self._stop.set()

    def run(self) -> SchedulerStats:
        """Drive all stages, drain every worker and return run totals."""
        if self.state is not SchedulerState.IDLE:
            raise RuntimeError("A scheduler can only be run once")

        end = total_duration(self.stages)
        started = self._clock()
        self.state = SchedulerState.RAMPING
        logger.info("Starting %d stages over %.1fs", len(self.stages), end)

        while not self._stop.is_set():
            elapsed = self._clock() - started
            if elapsed >= end:
                break

            self._enter_stage(stage_index_at(self.stages, elapsed))
            self._reconcile(target_at(self.stages, elapsed))

            if self._on_tick is not None and self._on_tick(elapsed):
                logger.warning("Early stop requested at %.1fs", elapsed)
                self.stop()
                break

            self._stop.wait(self._tick_interval)

        self.state = SchedulerState.DRAINING
        with self._lock:
            self._target = 0
        self._stop.set()
        logger.info("Draining %d live workers", self.live_workers)

        for worker in list(self._workers):
            worker.join()

        self.state = SchedulerState.DONE
        self._record_vus(0)
        duration = self._clock() - started
        logger.info(
            "Scheduler done: %d iterations (%d failed) in %.1fs",
            self._iterations,
            self._failed_iterations,
            duration,
        )
        return SchedulerStats(
            iterations=self._iterations,
            failed_iterations=self._failed_iterations,
            max_live_workers=self._max_live,
            duration_seconds=duration,
            stopped_early=self._stopped_early,
        )

    # ---- controller ------------------------------------------------------

    def _enter_stage(self, index: int) -> None:
        if index != self._stage_index:
            self._stage_index = index
            stage = self.stages[index]
            logger.info(
                "Stage %d/%d: ramp to %d VUs over %.1fs",
                index + 1,
                len(self.stages),
                stage.target,
                stage.duration,
            )

    def _reconcile(self, target: int) -> None:
        with self._lock:
            self._target = target
            to_spawn = max(0, target - self._live)
            self._live += to_spawn
            self._max_live = max(self._max_live, self._live)
            live = self._live

        for _ in range(to_spawn):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"vu-{len(self._workers) + 1}",
                daemon=True,
            )
            self._workers.append(worker)
            worker.start()
        self._record_vus(live)

    def _record_vus(self, live: int) -> None:
        if self._metrics is not None:
            self._metrics.vus.add(live)

    # ---- workers ---------------------------------------------------------

    def _should_exit(self) -> bool:
        """Retire this worker if stopping or if live workers exceed target."""
        with self._lock:
            if self._stop.is_set() or self._live > self._target:
                self._live -= 1
                return True
            return False

    def _worker_loop(self) -> None:
        while not self._should_exit():
            self._run_one()

    def _run_one(self) -> None:
        start = self._clock()
        failed = False
        try:
            self._iteration()
        except Exception:
            failed = True
            logger.exception("Iteration raised in %s", threading.current_thread().name)

        with self._lock:
            self._iterations += 1
            if failed:
                self._failed_iterations += 1
        if self._metrics is not None:
            self._metrics.iterations.add(1)
            self._metrics.iteration_duration.add((self._clock() - start) * 1000.0)

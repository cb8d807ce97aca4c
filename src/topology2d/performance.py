from __future__ import annotations

import csv
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

logger = logging.getLogger(__name__)

PHASES = ("integration", "refinement")

CSV_FIELDS = (
    "num_integration_steps",
    "num_particles_added",
    "num_rounds",
    "total_runtime_ms",
    "integration_ms",
    "refinement_ms",
)


class PerformanceRecorder:
    """Wall-clock and work counters of a computation.

    Times are accumulated in seconds and reported in milliseconds. Nothing
    here influences the computed results.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._phase_time = {name: 0.0 for name in PHASES}
        self._runtime = 0.0
        self._run_start: float | None = None
        self.num_integration_steps = 0
        self.num_particles_added = 0
        self.num_rounds = 0

    # -------- timing --------
    @contextmanager
    def measure(self, phase: str) -> Iterator[None]:
        if phase not in self._phase_time:
            raise ValueError(f"unknown phase {phase!r}; expected one of {PHASES}.")
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self._phase_time[phase] += time.perf_counter() - t0

    def run_started(self) -> None:
        self._run_start = time.perf_counter()

    def run_stopped(self) -> None:
        if self._run_start is not None:
            self._runtime += time.perf_counter() - self._run_start
            self._run_start = None

    # -------- counters --------
    def add_steps(self, n: int) -> None:
        self.num_integration_steps += int(n)

    def add_particles(self, n: int) -> None:
        self.num_particles_added += int(n)

    def add_round(self) -> None:
        self.num_rounds += 1

    # -------- reporting --------
    def phase_seconds(self, phase: str) -> float:
        return self._phase_time[phase]

    @property
    def runtime_seconds(self) -> float:
        running = 0.0 if self._run_start is None else time.perf_counter() - self._run_start
        return self._runtime + running

    def as_dict(self) -> dict[str, Any]:
        return {
            "num_integration_steps": self.num_integration_steps,
            "num_particles_added": self.num_particles_added,
            "num_rounds": self.num_rounds,
            "total_runtime_ms": round(1000.0 * self.runtime_seconds, 3),
            "integration_ms": round(1000.0 * self._phase_time["integration"], 3),
            "refinement_ms": round(1000.0 * self._phase_time["refinement"], 3),
        }

    def write_csv(self, stream: TextIO, *, header: bool = True) -> None:
        writer = csv.DictWriter(stream, fieldnames=CSV_FIELDS)
        if header:
            writer.writeheader()
        writer.writerow(self.as_dict())

    def log_summary(self) -> None:
        d = self.as_dict()
        logger.debug(
            "Performance: %d steps, %d particles, %d rounds, runtime %.1f ms "
            "(integration %.1f ms, refinement %.1f ms)",
            d["num_integration_steps"], d["num_particles_added"], d["num_rounds"],
            d["total_runtime_ms"], d["integration_ms"], d["refinement_ms"],
        )

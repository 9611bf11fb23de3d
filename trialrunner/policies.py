"""Collection policies deciding when a trial has warmed up and has enough data.

A session feeds every reported batch of measurements to its policy and turns
the policy's two answers into the ``ShouldContinue`` reply sent to the worker.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from .errors import ProtocolViolationError, UserBenchmarkError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .models import Measurement

TIMER_GRANULARITY_NANOS = max(1, round(time.get_clock_info("perf_counter").resolution * 1e9))

# Rep-based benchmarks slower than this multiple of the timer granularity
# would be measured just as well one invocation at a time.
MACRO_SUGGESTION_MULTIPLE = 1000

# Single-invocation measurements must exceed this multiple of the granularity.
MIN_MACRO_GRANULARITY_MULTIPLE = 100


class CollectionPolicy:
    """Base policy: warmup is immediate, done after a fixed number of samples."""

    def __init__(self, measurements_per_trial: int) -> None:
        """Initialise the policy.

        Args:
            measurements_per_trial: Measurements to keep before collection ends.
        """
        self.measurements_per_trial = measurements_per_trial
        self._measurements: list[Measurement] = []
        self._messages: list[str] = []

    def start_interval(self) -> None:
        """Note that the worker has started a timed interval."""

    def record(self, measurements: Iterable[Measurement]) -> None:
        """Take the measurements reported for one interval."""
        self._measurements.extend(measurements)

    def is_warmup_complete(self) -> bool:
        """Whether warmup is over and measurements are being kept."""
        return True

    def is_done_collecting(self) -> bool:
        """Whether enough measurements have been kept."""
        return len(self._measurements) >= self.measurements_per_trial

    def measurements(self) -> list[Measurement]:
        """Measurements kept so far, in arrival order."""
        return list(self._measurements)

    def messages(self) -> list[str]:
        """Diagnostic messages for the trial."""
        return list(self._messages)


class RepBasedCollectionPolicy(CollectionPolicy):
    """Policy for timed intervals of many repetitions.

    Warmup measurements count towards ``warmup_nanos`` and are then thrown
    away. Warmup also ends once ``max_warmup_wall_seconds`` have passed since
    the first interval started, since benchmarks with costly per-interval
    setup could otherwise take hours to accumulate enough measured time.
    """

    def __init__(
        self,
        measurements_per_trial: int,
        warmup_nanos: float,
        max_warmup_wall_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        granularity_nanos: int = TIMER_GRANULARITY_NANOS,
    ) -> None:
        """Initialise the policy.

        Args:
            measurements_per_trial: Post-warmup measurements to collect.
            warmup_nanos: Measured time to spend warming up.
            max_warmup_wall_seconds: Cap on wall-clock time spent warming up.
            clock: Monotonic clock in seconds, replaceable for testing.
            granularity_nanos: Resolution of the worker's timer.
        """
        super().__init__(measurements_per_trial)
        self.warmup_nanos = warmup_nanos
        self.max_warmup_wall_seconds = max_warmup_wall_seconds
        self.granularity_nanos = granularity_nanos
        self._clock = clock
        self._started_at: float | None = None
        self._elapsed_warmup_nanos = 0.0
        self._warmup_reported = False

    def start_interval(self) -> None:
        """Start the warmup wall clock on the first interval."""
        if self._started_at is None:
            self._started_at = self._clock()

    def record(self, measurements: Iterable[Measurement]) -> None:
        """Count the interval towards warmup, or keep it once warmup is over.

        Raises:
            ProtocolViolationError: If a warmup measurement is not in nanoseconds.
        """
        measurements = list(measurements)
        if not self.is_warmup_complete():
            for measurement in measurements:
                if measurement.unit != "ns":
                    msg = f"Warmup measurements must be in ns, got {measurement.unit!r}"
                    raise ProtocolViolationError(msg)
                self._elapsed_warmup_nanos += measurement.magnitude
            return

        if not self._warmup_reported:
            self._warmup_reported = True
            if not self._measured_warmup_reached():
                self._messages.append(
                    f"WARNING: Warmup was interrupted because it took longer than "
                    f"{self.max_warmup_wall_seconds:g}s of wall-clock time. "
                    f"{self._elapsed_warmup_nanos / 1e9:.3f}s was spent in the benchmark "
                    f"method for warmup (normal warmup duration should be "
                    f"{self.warmup_nanos / 1e9:g}s)."
                )
        self._check_measurements(measurements)
        self._measurements.extend(measurements)

    def is_warmup_complete(self) -> bool:
        """Whether enough measured time or wall time has been spent warming up."""
        if self._measured_warmup_reached():
            return True
        if self._started_at is None:
            return False
        return self._clock() - self._started_at > self.max_warmup_wall_seconds

    def messages(self) -> list[str]:
        """Diagnostic messages, plus a hint if every rep was slow."""
        messages = super().messages()
        threshold = self.granularity_nanos * MACRO_SUGGESTION_MULTIPLE
        if self._measurements and all(m.per_rep >= threshold for m in self._measurements):
            messages.append(
                f"INFO: This benchmark does not need rep-based timing. The timer granularity "
                f"({self.granularity_nanos}ns) is less than 0.1% of the fastest measured "
                f"runtime; consider the macro instrument."
            )
        return messages

    def _check_measurements(self, measurements: list[Measurement]) -> None:
        """Hook for subclasses to validate kept measurements."""

    def _measured_warmup_reached(self) -> bool:
        return self._elapsed_warmup_nanos >= self.warmup_nanos


class SingleInvocationCollectionPolicy(RepBasedCollectionPolicy):
    """Policy for macro benchmarks timed one invocation per interval."""

    def messages(self) -> list[str]:
        """Diagnostic messages; macro benchmarks never get the macro hint."""
        return list(self._messages)

    def _check_measurements(self, measurements: list[Measurement]) -> None:
        """Fail the trial if an invocation is too quick to time on its own.

        Raises:
            UserBenchmarkError: If a measurement is close to the timer granularity.
        """
        minimum = self.granularity_nanos * MIN_MACRO_GRANULARITY_MULTIPLE
        for measurement in measurements:
            if measurement.magnitude < minimum:
                msg = (
                    f"A single invocation took {measurement.magnitude:.0f}ns, too close to the "
                    f"timer granularity ({self.granularity_nanos}ns) to measure reliably; "
                    f"use the runtime instrument instead"
                )
                raise UserBenchmarkError(msg)


class AllocationCollectionPolicy(CollectionPolicy):
    """Policy for allocation counts, which need no warmup."""

    def record(self, measurements: Iterable[Measurement]) -> None:
        """Keep the measurements.

        Raises:
            ProtocolViolationError: If a measurement is not in bytes.
        """
        measurements = list(measurements)
        for measurement in measurements:
            if measurement.unit != "bytes":
                msg = f"Allocation measurements must be in bytes, got {measurement.unit!r}"
                raise ProtocolViolationError(msg)
        self._measurements.extend(measurements)

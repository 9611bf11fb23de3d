"""Repetition calibration for rep-based timing intervals.

The worker times the benchmark method over a number of repetitions and wants
every interval to last roughly ``target_interval_nanos``, whatever the real
per-repetition cost turns out to be. Estimates assume cost per rep is close
to constant and scale linearly from what has been observed so far.
"""

from __future__ import annotations

import math
import random

# Repetitions used for the one-off bootstrap invocation that seeds calibration.
INITIAL_REPS = 100

# Gaussian draws are clipped to this many standard deviations, which bounds
# the jittered estimate to base * (1 +/- MAX_JITTER_SIGMAS * jitter_fraction).
MAX_JITTER_SIGMAS = 3.0


def calculate_target_reps(
    previous_reps: int,
    previous_interval_nanos: int,
    target_interval_nanos: int,
    jitter_fraction: float,
    rng: random.Random | None = None,
) -> int:
    """Choose the repetition count for the next timed interval.

    The base estimate is ``previous_reps * target_interval_nanos /
    previous_interval_nanos``. When ``jitter_fraction`` is non-zero a clipped
    gaussian perturbation with standard deviation ``jitter_fraction * base``
    is added before rounding half up, so successive intervals do not lock onto a
    repetition count in step with periodic runtime effects such as garbage
    collection.

    Args:
        previous_reps: Repetitions performed in the observed interval(s).
        previous_interval_nanos: Measured duration of those repetitions.
        target_interval_nanos: Desired duration of the next interval.
        jitter_fraction: Relative standard deviation of the perturbation.
        rng: Random source; the module-level generator if omitted.

    Returns:
        The number of repetitions, never less than 1.

    Raises:
        ValueError: If a duration or repetition count is not positive, or the
            jitter fraction is negative.
    """
    if previous_interval_nanos <= 0:
        msg = f"previous_interval_nanos must be positive, got {previous_interval_nanos}"
        raise ValueError(msg)
    if previous_reps <= 0:
        msg = f"previous_reps must be positive, got {previous_reps}"
        raise ValueError(msg)
    if target_interval_nanos <= 0:
        msg = f"target_interval_nanos must be positive, got {target_interval_nanos}"
        raise ValueError(msg)
    if jitter_fraction < 0:
        msg = f"jitter_fraction must not be negative, got {jitter_fraction}"
        raise ValueError(msg)

    estimate = previous_reps * target_interval_nanos / previous_interval_nanos
    if jitter_fraction:
        gaussian = (rng or random).gauss(0.0, 1.0)
        gaussian = max(-MAX_JITTER_SIGMAS, min(MAX_JITTER_SIGMAS, gaussian))
        estimate += gaussian * jitter_fraction * estimate
    # Halves round up
    return max(1, math.floor(estimate + 0.5))


class RepCalibrator:
    """Tracks cumulative reps and time inside one worker's measurement loop.

    Estimates use the running totals rather than only the last interval,
    which damps the effect of a single noisy sample.
    """

    def __init__(
        self,
        target_interval_nanos: int,
        jitter_fraction: float,
        rng: random.Random | None = None,
    ) -> None:
        """Initialise the calibrator.

        Args:
            target_interval_nanos: Desired duration of each interval.
            jitter_fraction: Relative standard deviation of the perturbation.
            rng: Random source for jitter.
        """
        self.target_interval_nanos = target_interval_nanos
        self.jitter_fraction = jitter_fraction
        self.rng = rng or random.Random()
        self.total_reps = 0
        self.total_nanos = 0

    def record(self, reps: int, nanos: int) -> None:
        """Add an observed interval to the running totals."""
        self.total_reps += reps
        # A zero reading from a coarse clock would make the next estimate undefined.
        self.total_nanos += max(nanos, 1)

    def next_reps(self) -> int:
        """Estimate repetitions for the next interval.

        Returns:
            The repetition count.

        Raises:
            RuntimeError: If nothing has been recorded yet.
        """
        if self.total_reps == 0:
            msg = "RepCalibrator needs at least one recorded interval"
            raise RuntimeError(msg)
        return calculate_target_reps(
            self.total_reps,
            self.total_nanos,
            self.target_interval_nanos,
            self.jitter_fraction,
            self.rng,
        )

"""Worker variants, one per instrument.

Every variant offers the same capabilities, called by the worker loop in
this order: ``set_up_benchmark`` and ``bootstrap`` once, then
``pre_measure``, ``measure`` and ``post_measure`` per interval, and
``tear_down_benchmark`` at the end.
"""

from __future__ import annotations

import gc
import random
import tracemalloc
from typing import TYPE_CHECKING, Any

from ..calibration import INITIAL_REPS, RepCalibrator
from ..models import InstrumentKind, Measurement, monotonic_nanos
from .benchmark import bound_method, call_hook

if TYPE_CHECKING:
    from ..models import WorkerSpec


class Worker:
    """Shared behaviour: benchmark set-up and tear-down hooks."""

    def __init__(self, benchmark: Any, method_name: str, options: dict[str, Any]) -> None:
        """Initialise the worker.

        Args:
            benchmark: The parameterised benchmark instance.
            method_name: Name of the method to measure.
            options: Instrument options sent by the runner.
        """
        self.benchmark = benchmark
        self.method = bound_method(benchmark, method_name)
        self.options = options
        self.gc_before_each = bool(options.get("gc_before_each", False))

    def set_up_benchmark(self) -> None:
        """Run the benchmark's ``set_up`` hook."""
        call_hook(self.benchmark, "set_up")

    def bootstrap(self) -> None:
        """One-time work before the first interval."""

    def pre_measure(self, in_warmup: bool) -> None:
        """Prepare for an interval, outside the timed region."""
        if self.gc_before_each and not in_warmup:
            gc.collect()

    def measure(self) -> list[Measurement]:
        """Run one timed interval."""
        raise NotImplementedError

    def post_measure(self) -> None:
        """Clean up after an interval, outside the timed region."""

    def tear_down_benchmark(self) -> None:
        """Run the benchmark's ``tear_down`` hook."""
        call_hook(self.benchmark, "tear_down")


class RuntimeWorker(Worker):
    """Times ``method(reps)`` with a repetition count calibrated per interval."""

    def __init__(self, benchmark: Any, method_name: str, options: dict[str, Any]) -> None:
        """Initialise the worker and its calibrator."""
        super().__init__(benchmark, method_name, options)
        self.calibrator = RepCalibrator(
            int(options["timing_interval_nanos"]),
            float(options.get("jitter_fraction", 0.0)),
            random.Random(),
        )

    def bootstrap(self) -> None:
        """Time a fixed number of reps to seed calibration."""
        self.calibrator.record(INITIAL_REPS, self._time_reps(INITIAL_REPS))

    def measure(self) -> list[Measurement]:
        """Time one calibrated interval.

        Returns:
            A single measurement in nanoseconds weighted by the rep count.
        """
        reps = self.calibrator.next_reps()
        nanos = self._time_reps(reps)
        self.calibrator.record(reps, nanos)
        return [Measurement(magnitude=nanos, unit="ns", weight=reps, description="runtime")]

    def _time_reps(self, reps: int) -> int:
        start = monotonic_nanos()
        self.method(reps)
        return monotonic_nanos() - start


class MacroWorker(Worker):
    """Times a single invocation of ``method()`` per interval."""

    def pre_measure(self, in_warmup: bool) -> None:
        """Collect garbage if requested, then run the ``before_rep`` hook."""
        super().pre_measure(in_warmup)
        call_hook(self.benchmark, "before_rep")

    def measure(self) -> list[Measurement]:
        """Time one invocation.

        Returns:
            A single measurement in nanoseconds with weight 1.
        """
        start = monotonic_nanos()
        self.method()
        nanos = monotonic_nanos() - start
        return [Measurement(magnitude=nanos, unit="ns", weight=1, description="runtime")]

    def post_measure(self) -> None:
        """Run the ``after_rep`` hook."""
        call_hook(self.benchmark, "after_rep")


class AllocationWorker(Worker):
    """Measures bytes allocated by one invocation of ``method()``."""

    def set_up_benchmark(self) -> None:
        """Run ``set_up`` and start tracing allocations."""
        super().set_up_benchmark()
        tracemalloc.start()

    def bootstrap(self) -> None:
        """Invoke once so first-call allocations (imports, caches) are not counted."""
        self.method()

    def measure(self) -> list[Measurement]:
        """Measure peak traced memory growth across one invocation.

        Returns:
            A single measurement in bytes with weight 1.
        """
        before, _ = tracemalloc.get_traced_memory()
        tracemalloc.reset_peak()
        self.method()
        _, peak = tracemalloc.get_traced_memory()
        allocated = max(0, peak - before)
        return [Measurement(magnitude=allocated, unit="bytes", weight=1, description="allocation")]

    def tear_down_benchmark(self) -> None:
        """Stop tracing, then run ``tear_down``."""
        tracemalloc.stop()
        super().tear_down_benchmark()


def create_worker(spec: WorkerSpec, benchmark: Any) -> Worker:
    """Pick the worker variant for the spec's instrument.

    Returns:
        The worker.
    """
    match spec.instrument:
        case InstrumentKind.RUNTIME:
            worker_class = RuntimeWorker
        case InstrumentKind.MACRO:
            worker_class = MacroWorker
        case InstrumentKind.ALLOCATION:
            worker_class = AllocationWorker
    return worker_class(benchmark, spec.method_name, spec.options)

"""Data models and configuration classes for trial execution.

This module contains the dataclasses shared across the runner, the scheduler
and the worker processes, providing a single source of truth for data
structures and runner configuration.
"""

from __future__ import annotations

import json
import os
import sys
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dotenv import dotenv_values

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from .errors import FailureKind


class SchedulingPolicy(Enum):
    """Whether a trial may share the machine with other trials."""

    SERIAL = "serial"
    PARALLEL = "parallel"


class InstrumentKind(Enum):
    """Measurement strategy, chosen per experiment at trial dispatch."""

    RUNTIME = "runtime"
    MACRO = "macro"
    ALLOCATION = "allocation"


@dataclass(frozen=True)
class Target:
    """The interpreter a worker runs on, plus its environment overrides."""

    name: str
    executable: str
    env: tuple[tuple[str, str], ...] = ()

    @classmethod
    def current(cls) -> Target:
        """Build a target for the interpreter running the runner itself.

        Returns:
            A target named after the running Python version.
        """
        version = ".".join(str(part) for part in sys.version_info[:3])
        return cls(name=f"python-{version}", executable=sys.executable)

    @property
    def env_overrides(self) -> dict[str, str]:
        """Environment variables to set for workers on this target."""
        return dict(self.env)


@dataclass(frozen=True)
class InstrumentedMethod:
    """A benchmark method paired with the instrument that measures it.

    ``benchmark_class`` is an import reference of the form
    ``package.module:ClassName``.
    """

    benchmark_class: str
    method_name: str
    instrument: InstrumentKind

    def __str__(self) -> str:
        """Return ``ClassName.method`` for display."""
        class_name = self.benchmark_class.rpartition(":")[2]
        return f"{class_name}.{self.method_name}"


@dataclass(frozen=True)
class Experiment:
    """One fully parameterised unit of work to benchmark."""

    instrumented_method: InstrumentedMethod
    parameters: tuple[tuple[str, str], ...]
    target: Target

    @classmethod
    def create(
        cls,
        instrumented_method: InstrumentedMethod,
        parameters: Mapping[str, str],
        target: Target,
    ) -> Experiment:
        """Create an experiment with parameters in a stable, sorted order.

        Returns:
            The experiment.
        """
        return cls(instrumented_method, tuple(sorted(parameters.items())), target)

    @property
    def parameter_dict(self) -> dict[str, str]:
        """Parameter assignment as a plain dictionary."""
        return dict(self.parameters)

    @property
    def scheduling_policy(self) -> SchedulingPolicy:
        """Scheduling policy implied by the experiment's instrument."""
        if self.instrumented_method.instrument is InstrumentKind.ALLOCATION:
            return SchedulingPolicy.PARALLEL
        return SchedulingPolicy.SERIAL

    def __str__(self) -> str:
        """Return a compact human-readable description."""
        params = ",".join(f"{key}={value}" for key, value in self.parameters)
        return (
            f"{self.instrumented_method}{{{params}}} "
            f"[{self.instrumented_method.instrument.value}, {self.target.name}]"
        )


@dataclass(frozen=True)
class Measurement:
    """One weighted sample reported by a worker for a single timed interval."""

    magnitude: float
    unit: str
    weight: float
    description: str

    def __post_init__(self) -> None:
        """Validate the weight.

        Raises:
            ValueError: If the weight is not positive.
        """
        if not self.weight > 0:
            msg = f"Measurement weight must be positive, got {self.weight}"
            raise ValueError(msg)

    @property
    def per_rep(self) -> float:
        """Magnitude divided by weight (e.g. nanoseconds per repetition)."""
        return self.magnitude / self.weight

    def to_dict(self) -> dict[str, Any]:
        """Serialise for the wire.

        Returns:
            A JSON-compatible dictionary.
        """
        return {
            "magnitude": self.magnitude,
            "unit": self.unit,
            "weight": self.weight,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Measurement:
        """Deserialise from the wire.

        Returns:
            The measurement.
        """
        return cls(
            magnitude=float(data["magnitude"]),
            unit=str(data["unit"]),
            weight=float(data["weight"]),
            description=str(data["description"]),
        )


@dataclass(frozen=True)
class WorkerSpec:
    """Everything a worker process needs to run one trial.

    Passed to the worker on its command line as JSON.
    """

    trial_id: uuid.UUID
    benchmark_class: str
    method_name: str
    instrument: InstrumentKind
    parameters: dict[str, str] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise for the worker command line.

        Returns:
            A compact JSON document.
        """
        return json.dumps(
            {
                "trial_id": str(self.trial_id),
                "benchmark_class": self.benchmark_class,
                "method_name": self.method_name,
                "instrument": self.instrument.value,
                "parameters": self.parameters,
                "options": self.options,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, text: str) -> WorkerSpec:
        """Parse a worker spec from its JSON form.

        Returns:
            The worker spec.

        Raises:
            ValueError: If the document is malformed.
        """
        try:
            data = json.loads(text)
            return cls(
                trial_id=uuid.UUID(data["trial_id"]),
                benchmark_class=data["benchmark_class"],
                method_name=data["method_name"],
                instrument=InstrumentKind(data["instrument"]),
                parameters=dict(data.get("parameters", {})),
                options=dict(data.get("options", {})),
            )
        except (KeyError, TypeError) as e:
            msg = f"Invalid worker spec: {e}"
            raise ValueError(msg) from e


@dataclass
class Trial:
    """One timed attempt of an experiment.

    Measurements and messages accumulate while the owning session is active.
    Once :meth:`close` is called the trial is terminal and immutable.
    """

    experiment: Experiment
    trial_number: int = 1
    trial_id: uuid.UUID = field(default_factory=uuid.uuid4)
    measurements: list[Measurement] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    vm_properties: dict[str, str] = field(default_factory=dict)
    _closed: bool = field(default=False, repr=False)

    @property
    def closed(self) -> bool:
        """Whether the trial has reached a terminal state."""
        return self._closed

    def add_measurements(self, measurements: Iterable[Measurement]) -> None:
        """Append measurements to the trial.

        Raises:
            RuntimeError: If the trial is already terminal.
        """
        self._check_open()
        self.measurements.extend(measurements)

    def add_message(self, message: str) -> None:
        """Append a diagnostic message to the trial.

        Raises:
            RuntimeError: If the trial is already terminal.
        """
        self._check_open()
        self.messages.append(message)

    def close(self) -> None:
        """Mark the trial terminal; further appends are rejected."""
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            msg = f"Trial {self.trial_id} is closed"
            raise RuntimeError(msg)


@dataclass(frozen=True)
class TrialResult:
    """A trial that completed and collected enough measurements."""

    trial: Trial
    elapsed_seconds: float

    @property
    def experiment(self) -> Experiment:
        """The experiment the trial measured."""
        return self.trial.experiment


@dataclass(frozen=True)
class TrialFailure:
    """A trial that failed, with enough context to diagnose why."""

    trial: Trial
    kind: FailureKind
    message: str
    output_file: Path | None = None

    def describe(self) -> str:
        """One-line description suitable for logging.

        Returns:
            The failure kind and message, pointing at the worker output if any.
        """
        description = f"[{self.kind.value}] {self.message}"
        if self.output_file is not None:
            description += f" (Inspect {self.output_file} to see any worker output.)"
        return description


TrialOutcome = tuple[Trial, TrialResult | TrialFailure]


@dataclass
class ScheduledTrial:
    """A trial bound to its run task and scheduling policy."""

    trial: Trial
    task: Callable[[], TrialResult]
    policy: SchedulingPolicy
    _consumed: bool = field(default=False, repr=False)

    def take_task(self) -> Callable[[], TrialResult]:
        """Hand out the run task; a scheduled trial runs exactly once.

        Returns:
            The task.

        Raises:
            RuntimeError: If the task was already taken.
        """
        if self._consumed:
            msg = f"Trial {self.trial.trial_number} has already been run"
            raise RuntimeError(msg)
        self._consumed = True
        return self.task


# Global configuration defaults from environment variables
TRIAL_TIME_LIMIT = float(os.getenv("TRIAL_TIME_LIMIT", "300"))
WORKER_STARTUP_TIMEOUT = float(os.getenv("WORKER_STARTUP_TIMEOUT", "60"))
WORKER_CLEANUP_SECONDS = float(os.getenv("WORKER_CLEANUP_SECONDS", "2"))
HANDSHAKE_TIMEOUT = float(os.getenv("HANDSHAKE_TIMEOUT", "10"))
MAX_PARALLEL_TRIALS = int(os.getenv("MAX_PARALLEL_TRIALS", str(os.cpu_count() or 1)))
TRIALS_PER_EXPERIMENT = int(os.getenv("TRIALS_PER_EXPERIMENT", "1"))
TIMING_INTERVAL = float(os.getenv("TIMING_INTERVAL", "0.5"))
WARMUP_SECONDS = float(os.getenv("WARMUP_SECONDS", "10"))
MAX_WARMUP_WALL_TIME = float(os.getenv("MAX_WARMUP_WALL_TIME", "600"))
MEASUREMENTS_PER_TRIAL = int(os.getenv("MEASUREMENTS_PER_TRIAL", "9"))
JITTER_FRACTION = float(os.getenv("JITTER_FRACTION", "0.2"))
GC_BEFORE_EACH = os.getenv("GC_BEFORE_EACH", "false").lower() in {"1", "true", "yes"}
OUTPUT_PATH = os.getenv("OUTPUT_PATH", ".")


@dataclass
class RunnerConfig:
    """Configuration settings for a batch of trials.

    Durations are in seconds. A ``time_limit`` of zero disables the per-trial
    wall-clock limit.
    """

    time_limit: float = TRIAL_TIME_LIMIT
    worker_startup_timeout: float = WORKER_STARTUP_TIMEOUT
    worker_cleanup_seconds: float = WORKER_CLEANUP_SECONDS
    handshake_timeout: float = HANDSHAKE_TIMEOUT
    max_parallel_trials: int = MAX_PARALLEL_TRIALS
    trials_per_experiment: int = TRIALS_PER_EXPERIMENT
    timing_interval: float = TIMING_INTERVAL
    warmup: float = WARMUP_SECONDS
    max_warmup_wall_time: float = MAX_WARMUP_WALL_TIME
    measurements_per_trial: int = MEASUREMENTS_PER_TRIAL
    jitter_fraction: float = JITTER_FRACTION
    gc_before_each: bool = GC_BEFORE_EACH
    output_path: str = OUTPUT_PATH

    def __post_init__(self) -> None:
        """Validate numeric settings.

        Raises:
            ValueError: If a setting is out of range.
        """
        if self.time_limit < 0:
            msg = f"time_limit must not be negative, got {self.time_limit}"
            raise ValueError(msg)
        if self.timing_interval <= 0:
            msg = f"timing_interval must be positive, got {self.timing_interval}"
            raise ValueError(msg)
        if self.measurements_per_trial < 1:
            msg = f"measurements_per_trial must be at least 1, got {self.measurements_per_trial}"
            raise ValueError(msg)
        if self.max_parallel_trials < 1:
            msg = f"max_parallel_trials must be at least 1, got {self.max_parallel_trials}"
            raise ValueError(msg)
        if self.trials_per_experiment < 1:
            msg = f"trials_per_experiment must be at least 1, got {self.trials_per_experiment}"
            raise ValueError(msg)
        if not 0 <= self.jitter_fraction < 1:
            msg = f"jitter_fraction must be in [0, 1), got {self.jitter_fraction}"
            raise ValueError(msg)

    @classmethod
    def from_dotenv(cls, env_file: str = ".env") -> RunnerConfig:
        """Create configuration from a .env file, falling back to defaults.

        Returns:
            RunnerConfig: An instance populated with values from the .env file.
        """
        config = dotenv_values(env_file)

        def get_float(key: str, default: float) -> float:
            value = config.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                msg = f"Invalid number for environment variable {key}: {value}"
                raise ValueError(msg) from e

        def get_int(key: str, default: int) -> int:
            value = config.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                msg = f"Invalid integer value for environment variable {key}: {value}"
                raise ValueError(msg) from e

        def get_bool(key: str, default: bool) -> bool:
            value = config.get(key)
            if value is None:
                return default
            return value.lower() in {"1", "true", "yes"}

        return cls(
            time_limit=get_float("TRIAL_TIME_LIMIT", TRIAL_TIME_LIMIT),
            worker_startup_timeout=get_float("WORKER_STARTUP_TIMEOUT", WORKER_STARTUP_TIMEOUT),
            worker_cleanup_seconds=get_float("WORKER_CLEANUP_SECONDS", WORKER_CLEANUP_SECONDS),
            handshake_timeout=get_float("HANDSHAKE_TIMEOUT", HANDSHAKE_TIMEOUT),
            max_parallel_trials=get_int("MAX_PARALLEL_TRIALS", MAX_PARALLEL_TRIALS),
            trials_per_experiment=get_int("TRIALS_PER_EXPERIMENT", TRIALS_PER_EXPERIMENT),
            timing_interval=get_float("TIMING_INTERVAL", TIMING_INTERVAL),
            warmup=get_float("WARMUP_SECONDS", WARMUP_SECONDS),
            max_warmup_wall_time=get_float("MAX_WARMUP_WALL_TIME", MAX_WARMUP_WALL_TIME),
            measurements_per_trial=get_int("MEASUREMENTS_PER_TRIAL", MEASUREMENTS_PER_TRIAL),
            jitter_fraction=get_float("JITTER_FRACTION", JITTER_FRACTION),
            gc_before_each=get_bool("GC_BEFORE_EACH", GC_BEFORE_EACH),
            output_path=config.get("OUTPUT_PATH") or OUTPUT_PATH,
        )

    @property
    def time_limit_seconds(self) -> float | None:
        """Per-trial wall-clock limit, or None when unlimited."""
        return self.time_limit or None

    @property
    def timing_interval_nanos(self) -> int:
        """Target duration of one timed interval in nanoseconds."""
        return int(self.timing_interval * 1_000_000_000)


def monotonic_nanos() -> int:
    """Read the monotonic clock used for all interval timing.

    Returns:
        Nanoseconds from an arbitrary fixed point.
    """
    return time.perf_counter_ns()

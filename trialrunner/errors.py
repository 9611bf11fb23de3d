"""Exception types for trial execution.

Per-trial errors all derive from :class:`TrialFailureError` and carry a
:class:`FailureKind` so the scheduler can turn them into failure records
without inspecting concrete types. Broker errors are kept separate because
they surface synchronously to whoever is reserving a connection.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class FailureKind(Enum):
    """Category of a failed trial."""

    PROTOCOL_VIOLATION = "protocol_violation"
    WORKER_CRASH = "worker_crash"
    TIME_LIMIT_EXCEEDED = "time_limit_exceeded"
    USER_BENCHMARK_FAILURE = "user_benchmark_failure"
    LAUNCH_ERROR = "launch_error"
    UNEXPECTED = "unexpected"


class TrialFailureError(Exception):
    """A trial could not complete; fatal to that trial only."""

    kind: FailureKind = FailureKind.UNEXPECTED

    def __init__(self, message: str, kind: FailureKind | None = None) -> None:
        """Initialise the error with a message and optional kind override.

        Args:
            message: The user-facing description of what went wrong.
            kind: Overrides the class-level failure kind.
        """
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        # Set by the runner once the trial's output file is known
        self.output_file: Path | None = None


class ProtocolViolationError(TrialFailureError):
    """The worker sent something the session did not expect."""

    kind = FailureKind.PROTOCOL_VIOLATION


class WorkerCrashError(TrialFailureError):
    """The worker exited or dropped its connection before the trial was done."""

    kind = FailureKind.WORKER_CRASH


class TimeLimitExceededError(TrialFailureError):
    """The trial ran past its wall-clock limit."""

    kind = FailureKind.TIME_LIMIT_EXCEEDED


class UserBenchmarkError(TrialFailureError):
    """The benchmark code itself raised inside the worker."""

    kind = FailureKind.USER_BENCHMARK_FAILURE


class WorkerLaunchError(TrialFailureError):
    """The worker process could not be started."""

    kind = FailureKind.LAUNCH_ERROR


class BrokerClosedError(Exception):
    """The connection broker has been shut down."""


class BrokerUsageError(RuntimeError):
    """A trial id was reserved or resolved more than once."""


class MessageDecodeError(ValueError):
    """A wire message could not be decoded."""

"""The runner's half of the worker protocol for one trial.

A session owns one identified connection and the trial it belongs to. It
walks the worker through announce, bootstrap, warmup and measurement,
feeding each interval's measurements to the collection policy and replying
with whether to continue. Every way a session can end is exactly one
terminal transition, after which the trial is closed to further changes.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import TYPE_CHECKING

from .errors import (
    MessageDecodeError,
    ProtocolViolationError,
    TimeLimitExceededError,
    TrialFailureError,
    UserBenchmarkError,
    WorkerCrashError,
)
from .logger import logger
from .messages import (
    Failure,
    ShouldContinue,
    StartMeasurement,
    StartupAnnounce,
    StopMeasurement,
    VmProperties,
    WorkerLog,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from .connection import WorkerConnection
    from .launcher import TrialOutputLog
    from .messages import Message
    from .models import Trial
    from .policies import CollectionPolicy

# Only properties identifying the interpreter and platform are kept on the trial.
VM_PROPERTY_PREFIXES = ("python.", "platform.")


class SessionPhase(Enum):
    """Phase of a worker session."""

    AWAITING_ANNOUNCE = "awaiting_announce"
    BOOTSTRAPPING = "bootstrapping"
    WARMING_UP = "warming_up"
    MEASURING = "measuring"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self in {SessionPhase.DONE, SessionPhase.FAILED}


class WorkerSession:
    """Drives one matched worker connection to completion."""

    def __init__(
        self,
        trial: Trial,
        connection: WorkerConnection,
        policy: CollectionPolicy,
        time_limit: float | None = None,
        announce_timeout: float | None = None,
        cleanup_seconds: float = 2.0,
        output: TrialOutputLog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the session.

        Args:
            trial: The trial being run; mutated only by this session.
            connection: Connection identified with the trial's id.
            policy: Collection policy deciding warmup and completion.
            time_limit: Seconds allowed from bootstrap start; None for no limit.
            announce_timeout: Seconds to wait for the startup announcement.
            cleanup_seconds: Seconds to wait for the worker to hang up after DONE.
            output: Where free-form worker log lines are written.
            clock: Monotonic clock in seconds.
        """
        self.trial = trial
        self.connection = connection
        self.policy = policy
        self.time_limit = time_limit
        self.announce_timeout = announce_timeout
        self.cleanup_seconds = cleanup_seconds
        self.output = output
        self._clock = clock
        self._phase = SessionPhase.AWAITING_ANNOUNCE
        self._bootstrap_started: float | None = None
        self._measuring = False

    @property
    def phase(self) -> SessionPhase:
        """Current phase of the session."""
        return self._phase

    def run(self) -> None:
        """Exchange messages until the trial is done or has failed.

        On failure the session moves to FAILED, closes the trial and the
        connection, and re-raises as a :class:`TrialFailureError`.

        Raises:
            TrialFailureError: If the trial failed for any reason.
        """
        try:
            self._exchange()
        except TrialFailureError as e:
            self._fail(e)
            raise
        except MessageDecodeError as e:
            error = ProtocolViolationError(f"Malformed message from worker: {e}")
            self._fail(error)
            raise error from e
        except OSError as e:
            error = WorkerCrashError(f"Connection to worker failed during {self._phase.value}: {e}")
            self._fail(error)
            raise error from e
        self._drain()

    def _exchange(self) -> None:
        while not self._phase.terminal:
            message = self._receive()
            if message is None:
                msg = f"Worker closed the connection during {self._phase.value}"
                raise WorkerCrashError(msg)
            self._handle(message)

    def _receive(self) -> Message | None:
        """Read one message, bounded by whichever deadline applies.

        Raises:
            TimeLimitExceededError: If the deadline passes first.
        """
        if self._bootstrap_started is None:
            timeout = self.announce_timeout
            limit_description = f"Startup announcement not received within {timeout}s"
        elif self.time_limit is None:
            timeout = None
            limit_description = ""
        else:
            timeout = self.time_limit - (self._clock() - self._bootstrap_started)
            limit_description = f"Trial exceeded its time limit of {self.time_limit:g}s"
            if timeout <= 0:
                raise TimeLimitExceededError(limit_description)
        self.connection.settimeout(timeout)
        try:
            return self.connection.receive()
        except TimeoutError as e:
            raise TimeLimitExceededError(limit_description) from e

    def _handle(self, message: Message) -> None:
        """Apply one message to the session."""
        match message:
            case WorkerLog(text=text):
                if self.output is not None:
                    self.output.write("worker", text)
            case Failure(exception_summary=summary):
                msg = f"Benchmark raised an exception in the worker:\n{summary}"
                raise UserBenchmarkError(msg)
            case StartupAnnounce(trial_id=trial_id):
                self._expect(SessionPhase.AWAITING_ANNOUNCE, message)
                if trial_id != self.connection.trial_id:
                    msg = (
                        f"Worker announced trial {trial_id} on a connection "
                        f"identified as {self.connection.trial_id}"
                    )
                    raise ProtocolViolationError(msg)
                self._bootstrap_started = self._clock()
                self._transition(SessionPhase.BOOTSTRAPPING)
            case VmProperties(properties=properties):
                self._expect(SessionPhase.BOOTSTRAPPING, message)
                self.trial.vm_properties.update(
                    (key, value)
                    for key, value in properties.items()
                    if key.startswith(VM_PROPERTY_PREFIXES)
                )
            case StartMeasurement():
                self._on_start_measurement(message)
            case StopMeasurement(measurements=measurements):
                self._on_stop_measurement(message, measurements)
            case ShouldContinue():
                msg = "Worker sent a ShouldContinue message, which only the runner may send"
                raise ProtocolViolationError(msg)

    def _on_start_measurement(self, message: StartMeasurement) -> None:
        if self._phase is SessionPhase.AWAITING_ANNOUNCE:
            self._out_of_phase(message)
        if self._measuring:
            msg = "Worker started a measurement while another was in progress"
            raise ProtocolViolationError(msg)
        # The first interval starting is the worker's signal that setup is complete.
        if self._phase is SessionPhase.BOOTSTRAPPING:
            self._transition(SessionPhase.WARMING_UP)
        self._measuring = True
        self.policy.start_interval()

    def _on_stop_measurement(self, message: StopMeasurement, measurements: tuple) -> None:
        if not self._measuring:
            self._out_of_phase(message)
        self._measuring = False

        kept_before = len(self.policy.measurements())
        self.policy.record(measurements)
        self.trial.add_measurements(self.policy.measurements()[kept_before:])

        warmup_complete = self.policy.is_warmup_complete()
        done = self.policy.is_done_collecting()
        if warmup_complete and self._phase is SessionPhase.WARMING_UP:
            self._transition(SessionPhase.MEASURING)
        self.connection.send(ShouldContinue(not done, warmup_complete))
        if done:
            for text in self.policy.messages():
                self.trial.add_message(text)
            self._transition(SessionPhase.DONE)
            self.trial.close()

    def _expect(self, phase: SessionPhase, message: Message) -> None:
        if self._phase is not phase:
            self._out_of_phase(message)

    def _out_of_phase(self, message: Message) -> None:
        msg = f"Unexpected {type(message).__name__} during {self._phase.value}"
        raise ProtocolViolationError(msg)

    def _transition(self, phase: SessionPhase) -> None:
        if self._phase.terminal:
            msg = f"Session for trial {self.trial.trial_id} is already {self._phase.value}"
            raise RuntimeError(msg)
        logger.debug(
            "Trial %d: %s -> %s", self.trial.trial_number, self._phase.value, phase.value
        )
        self._phase = phase

    def _fail(self, error: TrialFailureError) -> None:
        if not self._phase.terminal:
            self._transition(SessionPhase.FAILED)
        self.trial.close()
        self.connection.close()
        logger.debug("Trial %d failed: %s", self.trial.trial_number, error)

    def _drain(self) -> None:
        """Hang up our side and wait briefly for the worker to hang up too.

        Anything other than log lines arriving now is ignored.
        """
        self.connection.close_writer()
        deadline = self._clock() + self.cleanup_seconds
        try:
            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise TimeoutError
                self.connection.settimeout(remaining)
                message = self.connection.receive()
                if message is None:
                    break
                if isinstance(message, WorkerLog):
                    if self.output is not None:
                        self.output.write("worker", message.text)
                    continue
                logger.warning(
                    "⚠️ Ignoring %s from trial %d after it finished",
                    type(message).__name__,
                    self.trial.trial_number,
                )
        except TimeoutError:
            logger.warning(
                "⚠️ Worker for trial %d did not hang up within %.1fs",
                self.trial.trial_number,
                self.cleanup_seconds,
            )
        except (OSError, MessageDecodeError) as e:
            logger.debug("Connection for trial %d ended untidily: %s", self.trial.trial_number, e)
        finally:
            self.connection.close()

"""Runs one trial end to end: reserve, launch, connect, drive, clean up."""

from __future__ import annotations

import time
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import (
    BrokerClosedError,
    FailureKind,
    TimeLimitExceededError,
    TrialFailureError,
    WorkerCrashError,
)
from .instruments import build_worker_spec, create_collection_policy
from .launcher import TrialOutputLog, WorkerLauncher
from .logger import logger
from .models import RunnerConfig, TrialResult
from .session import WorkerSession

if TYPE_CHECKING:
    from concurrent.futures import Future

    from .broker import ConnectionBroker
    from .connection import WorkerConnection
    from .launcher import WorkerProcess
    from .models import Trial

# How often to check on the worker process while waiting for it to connect
_CONNECT_POLL_SECONDS = 0.1

# Grace period for a connection that raced an exiting worker
_EXITED_WORKER_GRACE_SECONDS = 1.0


class TrialRunner:
    """Runs trials against one broker, each in its own worker process."""

    def __init__(
        self,
        broker: ConnectionBroker,
        config: RunnerConfig | None = None,
        launcher: WorkerLauncher | None = None,
        output_dir: Path | None = None,
    ) -> None:
        """Initialise the runner.

        Args:
            broker: A started broker that workers connect back to.
            config: Runner configuration; defaults from the environment.
            launcher: Worker launcher; one targeting the broker if omitted.
            output_dir: Directory for per-trial output files.
        """
        self.broker = broker
        self.config = config or RunnerConfig()
        self.launcher = launcher or WorkerLauncher(broker.port, broker.host)
        self.output_dir = output_dir or Path(self.config.output_path) / "worker-output"

    def output_path_for(self, trial: Trial) -> Path:
        """Path of the output file for a trial.

        Returns:
            The output file path.
        """
        return self.output_dir / f"trial-{trial.trial_number:04d}-{trial.trial_id}.log"

    def run_trial(self, trial: Trial) -> TrialResult:
        """Run one trial to completion.

        Returns:
            The trial result.

        Raises:
            TrialFailureError: If the trial failed; ``output_file`` is set.
        """
        started = time.monotonic()
        spec = build_worker_spec(trial, self.config)
        policy = create_collection_policy(spec.instrument, self.config)
        output = TrialOutputLog(self.output_path_for(trial))
        future = self.broker.reserve(trial.trial_id)
        connection = None
        try:
            with output, self.launcher.running(spec, trial.experiment.target, output) as worker:
                connection = self._await_connection(future, worker)
                session = WorkerSession(
                    trial,
                    connection,
                    policy,
                    time_limit=self.config.time_limit_seconds,
                    announce_timeout=self.config.worker_startup_timeout,
                    cleanup_seconds=self.config.worker_cleanup_seconds,
                    output=output,
                )
                session.run()
                if worker.wait(self.config.worker_cleanup_seconds) is None:
                    logger.warning(
                        "⚠️ Worker %d for trial %d did not exit after finishing; killing it",
                        worker.pid,
                        trial.trial_number,
                    )
        except TrialFailureError as e:
            e.output_file = output.path
            raise
        finally:
            if not future.cancel() and connection is None:
                _close_unclaimed(future)
            trial.close()
        return TrialResult(trial, time.monotonic() - started)

    def _await_connection(
        self, future: Future[WorkerConnection], worker: WorkerProcess
    ) -> WorkerConnection:
        """Wait for the worker to connect, watching for it to die first.

        Returns:
            The identified connection.

        Raises:
            WorkerCrashError: If the worker exits without connecting.
            TimeLimitExceededError: If it neither connects nor exits in time.
            TrialFailureError: If the broker shuts down while waiting.
        """
        deadline = time.monotonic() + self.config.worker_startup_timeout
        try:
            while True:
                try:
                    return future.result(timeout=_CONNECT_POLL_SECONDS)
                except TimeoutError:
                    pass
                exit_code = worker.poll()
                if exit_code is not None:
                    try:
                        return future.result(timeout=_EXITED_WORKER_GRACE_SECONDS)
                    except TimeoutError as e:
                        msg = f"Worker exited with code {exit_code} before connecting"
                        raise WorkerCrashError(msg) from e
                if time.monotonic() > deadline:
                    msg = (
                        f"Worker did not connect within "
                        f"{self.config.worker_startup_timeout:g}s of starting"
                    )
                    raise TimeLimitExceededError(msg)
        except BrokerClosedError as e:
            msg = f"Broker closed while waiting for the worker: {e}"
            raise TrialFailureError(msg, kind=FailureKind.LAUNCH_ERROR) from e


def _close_unclaimed(future: Future[WorkerConnection]) -> None:
    """Close a connection that arrived after the trial stopped waiting for it."""
    if future.done() and not future.cancelled() and future.exception() is None:
        logger.debug("Closing late connection for trial %s", future.result().trial_id)
        future.result().close()

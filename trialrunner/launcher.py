"""Worker process launching and output capture.

Each worker runs ``python -m trialrunner.worker`` on its target interpreter,
inside a private temporary directory that is removed however the trial ends.
Its stdout and stderr are pumped into a per-trial output file on background
threads so a failure can point the user at everything the worker printed.
"""

from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import IO, TYPE_CHECKING

from .errors import WorkerLaunchError
from .logger import logger

if TYPE_CHECKING:
    from collections.abc import Generator
    from types import TracebackType

    from .models import Target, WorkerSpec

WORKER_MODULE = "trialrunner.worker"

# Seconds to wait for a killed worker to be reaped
_KILL_WAIT_SECONDS = 5


class TrialOutputLog:
    """Append-only file collecting everything a worker said, from any source."""

    def __init__(self, path: Path) -> None:
        """Initialise the log; the file is created on :meth:`open`."""
        self.path = path
        self._lock = threading.Lock()
        self._file: IO[str] | None = None

    def open(self) -> TrialOutputLog:
        """Create the output file, truncating any previous content.

        Returns:
            The log itself.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self.path.open("w", encoding="utf-8")
        return self

    def write(self, source: str, line: str) -> None:
        """Record one line of worker output.

        Args:
            source: Where the line came from (``stdout``, ``stderr``, ``worker``).
            line: The line, with or without its trailing newline.
        """
        line = line.rstrip("\n")
        logger.debug("[%s] %s", source, line)
        with self._lock:
            if self._file is not None:
                self._file.write(f"[{source}] {line}\n")
                self._file.flush()

    def close(self) -> None:
        """Close the output file."""
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self) -> TrialOutputLog:
        """Open the log for use in a ``with`` block."""
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the log on leaving a ``with`` block."""
        self.close()


class WorkerProcess:
    """A running worker subprocess with its output pumps and private directory."""

    def __init__(
        self,
        process: subprocess.Popen[str],
        workdir: tempfile.TemporaryDirectory[str],
        output: TrialOutputLog,
    ) -> None:
        """Take ownership of a started process and begin pumping its output.

        Args:
            process: The worker process, started with piped stdout and stderr.
            workdir: The worker's private directory; removed on :meth:`close`.
            output: Where the worker's output is written.
        """
        self.process = process
        self.workdir = workdir
        self.output = output
        self._pumps = [
            threading.Thread(
                target=self._pump,
                args=(stream, name),
                name=f"worker-{process.pid}-{name}",
                daemon=True,
            )
            for stream, name in ((process.stdout, "stdout"), (process.stderr, "stderr"))
            if stream is not None
        ]
        for pump in self._pumps:
            pump.start()

    @property
    def pid(self) -> int:
        """Process id of the worker."""
        return self.process.pid

    def poll(self) -> int | None:
        """Return the exit code if the worker has exited, else None."""
        return self.process.poll()

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the worker to exit.

        Returns:
            The exit code, or None if the worker is still running at the timeout.
        """
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def kill(self) -> None:
        """Kill the worker if it is still running and reap it."""
        if self.process.poll() is None:
            logger.debug("Killing worker process %d", self.pid)
            self.process.kill()
            self.process.wait(timeout=_KILL_WAIT_SECONDS)

    def close(self) -> None:
        """Kill the worker if needed, drain its output and remove its directory."""
        try:
            self.kill()
            for pump in self._pumps:
                pump.join(timeout=2)
        finally:
            self.workdir.cleanup()

    def _pump(self, stream: IO[str], name: str) -> None:
        """Copy one output stream into the trial output until it closes."""
        with stream:
            for line in stream:
                self.output.write(name, line)


class WorkerLauncher:
    """Starts worker processes that connect back to a broker port."""

    def __init__(self, port: int, host: str = "127.0.0.1") -> None:
        """Initialise the launcher.

        Args:
            port: The broker's listening port.
            host: The broker's listening address.
        """
        self.port = port
        self.host = host

    def build_command(self, spec: WorkerSpec, target: Target) -> list[str]:
        """Build the worker command line.

        Returns:
            The argument vector.
        """
        return [
            target.executable,
            "-m",
            WORKER_MODULE,
            "--host",
            self.host,
            "--port",
            str(self.port),
            "--trial-id",
            str(spec.trial_id),
            "--spec",
            spec.to_json(),
        ]

    def build_env(self, target: Target, workdir: str) -> dict[str, str]:
        """Build the worker environment.

        The caller's import path is prepended to ``PYTHONPATH`` so the worker
        can import both this package and the benchmark module.

        Returns:
            The environment mapping.
        """
        env = dict(os.environ)
        env.update(target.env_overrides)
        paths = [os.getcwd(), *(p for p in sys.path if p and Path(p).is_dir())]
        if env.get("PYTHONPATH"):
            paths.append(env["PYTHONPATH"])
        env["PYTHONPATH"] = os.pathsep.join(dict.fromkeys(paths))
        env["TMPDIR"] = workdir
        env["PYTHONUNBUFFERED"] = "1"
        return env

    def launch(self, spec: WorkerSpec, target: Target, output: TrialOutputLog) -> WorkerProcess:
        """Start a worker for one trial.

        Returns:
            The running worker.

        Raises:
            WorkerLaunchError: If the process could not be started.
        """
        workdir = tempfile.TemporaryDirectory(prefix=f"trial-{spec.trial_id}-")
        command = self.build_command(spec, target)
        try:
            process = subprocess.Popen(
                command,
                cwd=workdir.name,
                env=self.build_env(target, workdir.name),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            workdir.cleanup()
            msg = f"Failed to start worker with {target.executable}: {e}"
            raise WorkerLaunchError(msg) from e
        logger.debug(
            "Started worker %d for trial %s in %s", process.pid, spec.trial_id, workdir.name
        )
        return WorkerProcess(process, workdir, output)

    @contextmanager
    def running(
        self, spec: WorkerSpec, target: Target, output: TrialOutputLog
    ) -> Generator[WorkerProcess, None, None]:
        """Context manager running a worker for the duration of a trial.

        Yields:
            The running worker, killed and cleaned up on exit.
        """
        worker = self.launch(spec, target, output)
        try:
            yield worker
        finally:
            worker.close()

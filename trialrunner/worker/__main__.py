"""Worker process entry point.

Connects back to the runner's broker, identifies itself with the trial id,
then runs the measurement loop until the runner says to stop.
"""

from __future__ import annotations

import argparse
import contextlib
import os
import platform
import socket
import sys
import traceback
import uuid
from typing import TYPE_CHECKING

from ..connection import WorkerConnection
from ..errors import ProtocolViolationError
from ..logger import logger
from ..messages import (
    Failure,
    ShouldContinue,
    StartMeasurement,
    StartupAnnounce,
    StopMeasurement,
    VmProperties,
    WorkerLog,
    encode_trial_id,
)
from ..models import WorkerSpec
from .benchmark import load_benchmark
from .instruments import create_worker

if TYPE_CHECKING:
    from .instruments import Worker

CONNECT_TIMEOUT_SECONDS = 30


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse the arguments supplied by the launcher.

    Returns:
        argparse.Namespace: Parsed command-line arguments.
    """
    parser = argparse.ArgumentParser(description="Run one benchmark trial for a trial runner")
    parser.add_argument("--host", default="127.0.0.1", help="Broker address")
    parser.add_argument("--port", type=int, required=True, help="Broker port")
    parser.add_argument("--trial-id", type=uuid.UUID, required=True, help="Trial id")
    parser.add_argument("--spec", required=True, help="Worker spec as JSON")
    return parser.parse_args(argv)


def vm_properties() -> dict[str, str]:
    """Describe the interpreter and platform this worker runs on.

    Returns:
        Property names mapped to values.
    """
    return {
        "python.implementation": platform.python_implementation(),
        "python.version": platform.python_version(),
        "python.executable": sys.executable,
        "platform.system": platform.system(),
        "platform.release": platform.release(),
        "platform.machine": platform.machine(),
        "os.cpu_count": str(os.cpu_count()),
    }


def run_trial(connection: WorkerConnection, worker: Worker) -> None:
    """Run the measurement loop until the runner asks to stop.

    Raises:
        ProtocolViolationError: If the runner replies with anything unexpected.
    """
    worker.set_up_benchmark()
    try:
        connection.send(WorkerLog("Bootstrap phase starting."))
        worker.bootstrap()
        connection.send(WorkerLog("Bootstrap phase ended."))

        in_warmup = True
        while True:
            worker.pre_measure(in_warmup)
            connection.send(StartMeasurement())
            measurements = worker.measure()
            worker.post_measure()
            connection.send(StopMeasurement(tuple(measurements)))

            match connection.receive():
                case ShouldContinue(should_continue=go_on, warmup_complete=warmup_complete):
                    if not go_on:
                        break
                    in_warmup = not warmup_complete
                case None:
                    msg = "Runner closed the connection mid-trial"
                    raise ProtocolViolationError(msg)
                case other:
                    msg = f"Unexpected reply from runner: {other!r}"
                    raise ProtocolViolationError(msg)
    finally:
        worker.tear_down_benchmark()


def report_failure(connection: WorkerConnection, summary: str) -> None:
    """Tell the runner the benchmark failed, if it is still listening."""
    # The runner closes the connection once a trial exceeds its time limit
    with contextlib.suppress(OSError):
        connection.send(Failure(summary))


def main(argv: list[str] | None = None) -> int:
    """Run the worker.

    Returns:
        Process exit code.
    """
    args = parse_args(argv)
    spec = WorkerSpec.from_json(args.spec)

    sock = socket.create_connection((args.host, args.port), timeout=CONNECT_TIMEOUT_SECONDS)
    sock.settimeout(None)
    sock.sendall(encode_trial_id(args.trial_id))

    with WorkerConnection(sock, args.trial_id) as connection:
        connection.send(StartupAnnounce(args.trial_id))
        connection.send(VmProperties(vm_properties()))
        try:
            benchmark = load_benchmark(spec.benchmark_class, spec.parameters)
            run_trial(connection, create_worker(spec, benchmark))
        except ProtocolViolationError:
            logger.exception("Protocol error talking to the runner")
            return 2
        except Exception:
            logger.exception("Benchmark failed")
            report_failure(connection, traceback.format_exc())
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import socket
import uuid
from typing import TYPE_CHECKING

import pytest

from trialrunner.broker import ConnectionBroker
from trialrunner.connection import WorkerConnection
from trialrunner.models import (
    Experiment,
    InstrumentedMethod,
    InstrumentKind,
    RunnerConfig,
    Target,
    Trial,
)
from trialrunner.runner import TrialRunner

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path


def _make_experiment(
    instrument: InstrumentKind = InstrumentKind.RUNTIME,
    benchmark_class: str = "sample_benchmarks:ListAppendBenchmark",
    method_name: str = "time_append",
    **parameters: str,
) -> Experiment:
    method = InstrumentedMethod(benchmark_class, method_name, instrument)
    return Experiment.create(method, parameters, Target.current())


@pytest.fixture
def make_experiment() -> Callable[..., Experiment]:
    return _make_experiment


@pytest.fixture
def experiment() -> Experiment:
    return _make_experiment(size="5")


@pytest.fixture
def trial(experiment: Experiment) -> Trial:
    return Trial(experiment)


@pytest.fixture
def connection_pair() -> Iterator[Callable[[uuid.UUID], tuple[WorkerConnection, WorkerConnection]]]:
    """Factory for (runner side, worker side) connections over a socket pair."""
    opened: list[WorkerConnection] = []

    def factory(trial_id: uuid.UUID) -> tuple[WorkerConnection, WorkerConnection]:
        ours, theirs = socket.socketpair()
        pair = (WorkerConnection(ours, trial_id), WorkerConnection(theirs, trial_id))
        opened.extend(pair)
        return pair

    yield factory
    for connection in opened:
        connection.close()


@pytest.fixture
def fast_config(tmp_path: Path) -> RunnerConfig:
    return RunnerConfig(
        time_limit=30,
        worker_startup_timeout=30,
        worker_cleanup_seconds=2,
        handshake_timeout=5,
        max_parallel_trials=4,
        trials_per_experiment=1,
        timing_interval=0.005,
        warmup=0.01,
        max_warmup_wall_time=5,
        measurements_per_trial=3,
        jitter_fraction=0.2,
        gc_before_each=False,
        output_path=str(tmp_path),
    )


@pytest.fixture
def broker() -> Iterator[ConnectionBroker]:
    with ConnectionBroker(handshake_timeout=5) as started:
        yield started


@pytest.fixture
def runner(broker: ConnectionBroker, fast_config: RunnerConfig, tmp_path: Path) -> TrialRunner:
    return TrialRunner(broker, fast_config, output_dir=tmp_path / "worker-output")

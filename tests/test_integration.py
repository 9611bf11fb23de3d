"""End-to-end trials against real worker processes."""

from __future__ import annotations

import csv
import dataclasses
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from trialrunner.cli import main
from trialrunner.errors import (
    FailureKind,
    TimeLimitExceededError,
    UserBenchmarkError,
    WorkerCrashError,
    WorkerLaunchError,
)
from trialrunner.models import (
    Experiment,
    InstrumentedMethod,
    InstrumentKind,
    Target,
    Trial,
    TrialFailure,
    TrialResult,
)
from trialrunner.runner import TrialRunner
from trialrunner.scheduler import TrialScheduler

if TYPE_CHECKING:
    from trialrunner.broker import ConnectionBroker
    from trialrunner.models import RunnerConfig


def printed_value(output: str, key: str) -> str:
    prefix = f"[stdout] {key}="
    return next(line[len(prefix) :] for line in output.splitlines() if line.startswith(prefix))


def sample(make_experiment, class_name: str, method_name: str) -> Experiment:
    return make_experiment(
        benchmark_class=f"sample_benchmarks:{class_name}", method_name=method_name
    )


def test_runtime_trial_collects_measurements(runner: TrialRunner, experiment: Experiment) -> None:
    trial = Trial(experiment)
    result = runner.run_trial(trial)

    assert isinstance(result, TrialResult)
    assert trial.closed
    assert len(trial.measurements) == 3
    assert all(m.unit == "ns" and m.weight >= 1 for m in trial.measurements)
    assert trial.vm_properties["python.version"]
    assert "os.cpu_count" not in trial.vm_properties

    output = runner.output_path_for(trial).read_text()
    assert "[worker] Bootstrap phase starting." in output
    workdir = printed_value(output, "cwd")
    assert Path(printed_value(output, "tmpdir")).resolve() == Path(workdir).resolve()
    assert not Path(workdir).exists()


def test_macro_trial_times_single_invocations(runner: TrialRunner, make_experiment) -> None:
    trial = Trial(
        make_experiment(InstrumentKind.MACRO, "sample_benchmarks:SleepBenchmark", "run_once")
    )
    runner.run_trial(trial)

    assert len(trial.measurements) == 3
    assert all(m.weight == 1 for m in trial.measurements)
    # 2ms sleeps
    assert all(m.magnitude >= 1_000_000 for m in trial.measurements)
    assert "[stdout] before_rep" in runner.output_path_for(trial).read_text()


def test_allocation_trial_reports_bytes(runner: TrialRunner, make_experiment) -> None:
    trial = Trial(
        make_experiment(InstrumentKind.ALLOCATION, "sample_benchmarks:AllocatingBenchmark", "build")
    )
    runner.run_trial(trial)

    assert len(trial.measurements) == 3
    assert all(m.unit == "bytes" and m.magnitude > 0 for m in trial.measurements)


def test_crashing_worker_points_at_its_output(runner: TrialRunner, make_experiment) -> None:
    trial = Trial(sample(make_experiment, "CrashingBenchmark", "time_crash"))
    with pytest.raises(WorkerCrashError) as excinfo:
        runner.run_trial(trial)

    assert excinfo.value.output_file == runner.output_path_for(trial)
    assert excinfo.value.output_file.exists()
    assert trial.closed
    assert trial.measurements == []


def test_raising_benchmark_is_a_user_failure(runner: TrialRunner, make_experiment) -> None:
    trial = Trial(sample(make_experiment, "RaisingBenchmark", "time_raise"))
    with pytest.raises(UserBenchmarkError, match="boom"):
        runner.run_trial(trial)


def test_hanging_benchmark_hits_the_time_limit(
    broker: ConnectionBroker, fast_config: RunnerConfig, make_experiment, tmp_path: Path
) -> None:
    config = dataclasses.replace(fast_config, time_limit=1)
    runner = TrialRunner(broker, config, output_dir=tmp_path / "worker-output")
    trial = Trial(sample(make_experiment, "HangingBenchmark", "time_hang"))

    with pytest.raises(TimeLimitExceededError, match="time limit"):
        runner.run_trial(trial)


def test_missing_interpreter_is_a_launch_error(runner: TrialRunner) -> None:
    method = InstrumentedMethod(
        "sample_benchmarks:ListAppendBenchmark", "time_append", InstrumentKind.RUNTIME
    )
    target = Target(name="missing", executable="/nonexistent/bin/python")
    trial = Trial(Experiment.create(method, {}, target))

    with pytest.raises(WorkerLaunchError) as excinfo:
        runner.run_trial(trial)
    assert excinfo.value.kind is FailureKind.LAUNCH_ERROR


def test_batch_survives_a_crashing_experiment(runner: TrialRunner, make_experiment) -> None:
    experiments = [
        make_experiment(size="5"),
        sample(make_experiment, "CrashingBenchmark", "time_crash"),
        make_experiment(size="50"),
    ]
    scheduler = TrialScheduler(runner.run_trial, max_parallel_trials=2)
    outcomes = list(scheduler.run(scheduler.schedule(experiments, 1)))

    assert len(outcomes) == 3
    failures = [outcome for _, outcome in outcomes if isinstance(outcome, TrialFailure)]
    assert [failure.kind for failure in failures] == [FailureKind.WORKER_CRASH]
    assert failures[0].output_file is not None
    assert "Inspect" in failures[0].describe()


def test_command_line_run_writes_measurements(tmp_path: Path) -> None:
    env_file = tmp_path / "test.env"
    env_file.write_text(
        "WARMUP_SECONDS=0.01\n"
        "TIMING_INTERVAL=0.005\n"
        "MEASUREMENTS_PER_TRIAL=2\n"
        "TRIAL_TIME_LIMIT=60\n"
    )
    exit_code = main(
        [
            "sample_benchmarks:ListAppendBenchmark.time_append",
            "--param",
            "size=5,10",
            "--output",
            str(tmp_path),
            "--env-file",
            str(env_file),
        ]
    )

    assert exit_code == 0
    [results_dir] = tmp_path.glob("trial_results_*")
    with (results_dir / "measurements.csv").open(newline="") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 4
    assert {row["unit"] for row in rows} == {"ns"}
    assert (results_dir / "run_info.txt").exists()


def test_command_line_rejects_bad_benchmark_reference(tmp_path: Path) -> None:
    assert main(["not-a-reference", "--output", str(tmp_path)]) == 2

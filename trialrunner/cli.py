"""Command-line entry point for running benchmark trials.

Expands one benchmark method and its parameter values into experiments,
runs the configured number of trials of each in isolated worker processes
and writes every measurement plus a summary to a timestamped results
directory. Configuration comes from environment variables or a .env file,
with command-line flags taking precedence.

Example:
    run-trials mypkg.benchmarks:ListBenchmark.append --param size=10,1000 --trials 3
"""

from __future__ import annotations

import argparse
import dataclasses
import itertools
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .broker import ConnectionBroker
from .logger import configure_logging, logger
from .models import Experiment, InstrumentedMethod, InstrumentKind, RunnerConfig, Target
from .results_manager import ResultsManager
from .runner import TrialRunner
from .scheduler import TrialScheduler

if TYPE_CHECKING:
    from collections.abc import Sequence


class BatchRunner:
    """Main batch execution coordinator.

    Owns the broker for the duration of the batch, schedules every trial and
    hands each outcome to the results manager as it arrives.
    """

    def __init__(self, config: RunnerConfig) -> None:
        """Initialise batch runner with configuration and results manager."""
        self.config = config
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S")
        self.results_dir = Path(config.output_path) / f"trial_results_{timestamp}"
        self.results_manager = ResultsManager(self.results_dir)

        logger.info("🎯 Trial runner initialised")
        logger.info("📁 Results directory: %s", self.results_dir)

    def run(self, experiments: Sequence[Experiment]) -> int:
        """Run every trial of every experiment.

        Returns:
            The number of failed trials.
        """
        self.results_manager.save_run_info(self.config)
        try:
            with ConnectionBroker(handshake_timeout=self.config.handshake_timeout) as broker:
                runner = TrialRunner(
                    broker, self.config, output_dir=self.results_dir / "worker-output"
                )
                scheduler = TrialScheduler(runner.run_trial, self.config.max_parallel_trials)
                scheduled = scheduler.schedule(experiments, self.config.trials_per_experiment)
                logger.info(
                    "🎬 Running %d trial(s) of %d experiment(s)", len(scheduled), len(experiments)
                )
                for trial, outcome in scheduler.run(scheduled):
                    self.results_manager.add_outcome(trial, outcome)

            measurements_file = self.results_manager.save_results()
            self.results_manager.print_summary()
            logger.info("🎉 Measurements saved to: %s", measurements_file)
            return len(self.results_manager.failures)
        finally:
            self.results_manager.close()


def parse_benchmark(reference: str) -> tuple[str, str]:
    """Split ``module:Class.method`` into the class reference and method name.

    Returns:
        ``("module:Class", "method")``.

    Raises:
        ValueError: If the reference is malformed.
    """
    module, _, rest = reference.partition(":")
    class_name, _, method = rest.rpartition(".")
    if not module or not class_name or not method:
        msg = f"Benchmark must look like 'module:Class.method', got {reference!r}"
        raise ValueError(msg)
    return f"{module}:{class_name}", method


def parse_parameters(values: Sequence[str]) -> dict[str, list[str]]:
    """Parse ``name=v1,v2`` flags into value lists per parameter.

    Returns:
        Parameter names mapped to their candidate values.

    Raises:
        ValueError: If a flag is malformed or repeats a name.
    """
    parameters: dict[str, list[str]] = {}
    for value in values:
        name, sep, options = value.partition("=")
        name = name.strip()
        if not sep or not name or not options:
            msg = f"Parameter must look like 'name=v1,v2', got {value!r}"
            raise ValueError(msg)
        if name in parameters:
            msg = f"Parameter {name!r} given more than once"
            raise ValueError(msg)
        parameters[name] = [option.strip() for option in options.split(",")]
    return parameters


def build_experiments(
    method: InstrumentedMethod, parameters: dict[str, list[str]], target: Target
) -> list[Experiment]:
    """Build one experiment per combination of parameter values.

    Returns:
        Experiments in a stable order.
    """
    names = sorted(parameters)
    return [
        Experiment.create(method, dict(zip(names, combination, strict=True)), target)
        for combination in itertools.product(*(parameters[name] for name in names))
    ]


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments for a trial batch.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="Run benchmark trials in isolated worker processes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Benchmark methods:
  runtime     method(reps) is timed over a calibrated number of reps
  macro       method() is timed once per measurement
  allocation  bytes allocated by method() are measured per invocation

Configuration is also read from the environment or --env-file, e.g.
TRIAL_TIME_LIMIT, WARMUP_SECONDS, MEASUREMENTS_PER_TRIAL, OUTPUT_PATH.
        """,
    )
    parser.add_argument("benchmark", help="Benchmark method as module:Class.method")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="NAME=V1,V2",
        help="Parameter values; every combination becomes an experiment",
    )
    parser.add_argument(
        "--instrument",
        choices=[kind.value for kind in InstrumentKind],
        default=InstrumentKind.RUNTIME.value,
        help="How the benchmark method is measured (default: runtime)",
    )
    parser.add_argument("--trials", type=int, help="Trials per experiment")
    parser.add_argument(
        "--time-limit", type=float, help="Per-trial time limit in seconds (0 = unlimited)"
    )
    parser.add_argument("--parallel", type=int, help="Maximum trials run at once")
    parser.add_argument("--output", help="Directory for results")
    parser.add_argument("--env-file", default=".env", help="Configuration file (default: .env)")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show debug output")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show warnings")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for trial execution.

    Returns:
        Process exit code: 0 if every trial succeeded, 1 if any failed.
    """
    args = parse_arguments(argv)
    if args.verbose:
        configure_logging("DEBUG")
    elif args.quiet:
        configure_logging("WARNING")

    try:
        config = RunnerConfig.from_dotenv(args.env_file)
        overrides = {
            "trials_per_experiment": args.trials,
            "time_limit": args.time_limit,
            "max_parallel_trials": args.parallel,
            "output_path": args.output,
        }
        config = dataclasses.replace(
            config, **{key: value for key, value in overrides.items() if value is not None}
        )
        benchmark_class, method_name = parse_benchmark(args.benchmark)
        parameters = parse_parameters(args.param)
    except ValueError as e:
        logger.error("❌ %s", e)
        return 2

    method = InstrumentedMethod(benchmark_class, method_name, InstrumentKind(args.instrument))
    experiments = build_experiments(method, parameters, Target.current())

    logger.info("🚀 Benchmark: %s (%s)", method, method.instrument.value)
    logger.info("🧪 Experiments: %d", len(experiments))
    logger.info("🔄 Trials per experiment: %d", config.trials_per_experiment)
    logger.info("⏱️ Time limit per trial: %s", config.time_limit_seconds or "unlimited")

    try:
        failures = BatchRunner(config).run(experiments)
    except KeyboardInterrupt:
        logger.info("⏹️ Run interrupted by user")
        return 130
    except Exception:
        logger.exception("💥 Run failed")
        raise
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())

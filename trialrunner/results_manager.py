"""Results management for trial batches.

This module provides the ResultsManager class for collecting trial outcomes,
writing per-measurement CSV output and logging a console summary.
"""

from __future__ import annotations

import csv
import logging
import platform
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .logger import logger
from .models import TrialFailure, TrialResult

if TYPE_CHECKING:
    from .models import RunnerConfig, Trial, TrialOutcome

MEASUREMENT_CSV_HEADERS = [
    "trial_number",
    "trial_id",
    "experiment",
    "magnitude",
    "unit",
    "weight",
    "description",
]


class ResultsManager:
    """Manages trial results storage, file output and summary generation.

    Handles CSV export of every measurement, a run log next to it, and a
    per-experiment console summary.
    """

    def __init__(self, base_dir: Path) -> None:
        """Initialise results manager with base directory for results storage."""
        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.results: list[TrialResult] = []
        self.failures: list[TrialFailure] = []

        # Use the shared logger - no need to reconfigure it
        self.logger = logger

        # Add file handler for runner log only
        self.file_handler = logging.FileHandler(self.base_dir / "runner.log")
        self.file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(levelname)s - %(threadName)s - %(message)s")
        )
        self.logger.addHandler(self.file_handler)

    def save_run_info(self, config: RunnerConfig) -> None:
        """Record the runner configuration and host for reproducibility."""
        info_file = self.base_dir / "run_info.txt"
        try:
            with Path(info_file).open("w", encoding="utf-8") as f:
                f.write("=== Run Information ===\n")
                f.write(f"Date: {datetime.now(tz=UTC)}\n")
                f.write(f"Python: {sys.version.split()[0]} ({sys.executable})\n")
                f.write(f"Platform: {platform.platform()}\n\n")
                f.write("=== Runner Configuration ===\n")
                f.writelines(f"{key}: {value}\n" for key, value in vars(config).items())
        except OSError:
            self.logger.exception("Failed to save run info")

    def add_outcome(self, trial: Trial, outcome: TrialResult | TrialFailure) -> None:
        """Add a trial outcome to the collection."""
        match outcome:
            case TrialResult():
                self.results.append(outcome)
            case TrialFailure():
                self.failures.append(outcome)
        self.logger.debug("Recorded outcome of trial %d", trial.trial_number)

    def add_outcomes(self, outcomes: list[TrialOutcome]) -> None:
        """Add several trial outcomes."""
        for trial, outcome in outcomes:
            self.add_outcome(trial, outcome)

    def save_results(self) -> Path:
        """Write every measurement of every successful trial to CSV.

        Returns:
            Path of the CSV file.
        """
        measurements_file = self.base_dir / "measurements.csv"
        with Path(measurements_file).open("w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(MEASUREMENT_CSV_HEADERS)
            for result in sorted(self.results, key=lambda r: r.trial.trial_number):
                trial = result.trial
                for measurement in trial.measurements:
                    writer.writerow([
                        trial.trial_number,
                        trial.trial_id,
                        trial.experiment,
                        measurement.magnitude,
                        measurement.unit,
                        measurement.weight,
                        measurement.description,
                    ])
        return measurements_file

    def print_summary(self) -> None:
        """Log a per-experiment summary and the list of failures.

        For each experiment the weighted mean per rep is the total magnitude
        over the total weight across all its trials.
        """
        if not self.results and not self.failures:
            logger.warning("No results to summarise")
            return

        logger.info("=== TRIALS COMPLETE ===")

        experiments: dict[str, list[TrialResult]] = {}
        for result in self.results:
            experiments.setdefault(str(result.experiment), []).append(result)

        if experiments:
            logger.info("Trials | Measurements | Mean per rep | Experiment")
        for experiment, results in experiments.items():
            measurements = [m for r in results for m in r.trial.measurements]
            total_weight = sum(m.weight for m in measurements)
            unit = measurements[0].unit if measurements else ""
            mean_per_rep = (
                sum(m.magnitude for m in measurements) / total_weight if total_weight else 0.0
            )
            logger.info(
                "%6d | %12d | %9.1f %-2s | %s",
                len(results),
                len(measurements),
                mean_per_rep,
                unit,
                experiment,
            )
            for text in dict.fromkeys(t for r in results for t in r.trial.messages):
                logger.info("  %s", text)

        if self.failures:
            logger.warning("=== %d FAILED TRIAL(S) ===", len(self.failures))
            for failure in sorted(self.failures, key=lambda f: f.trial.trial_number):
                logger.warning(
                    "Trial %d (%s): %s",
                    failure.trial.trial_number,
                    failure.trial.experiment,
                    failure.describe(),
                )

    def close(self) -> None:
        """Detach the run log from the shared logger."""
        self.logger.removeHandler(self.file_handler)
        self.file_handler.close()

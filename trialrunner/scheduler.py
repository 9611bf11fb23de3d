"""Batch scheduling of trials with failure isolation.

Trials keep their schedule order. Consecutive PARALLEL trials are run
together on a bounded thread pool and reported as they finish; a SERIAL
trial runs only once everything before it has finished and nothing else
starts until it is done.
"""

from __future__ import annotations

import functools
import itertools
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from .errors import FailureKind, TrialFailureError
from .logger import logger
from .models import MAX_PARALLEL_TRIALS, ScheduledTrial, SchedulingPolicy, Trial, TrialFailure

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Sequence

    from .models import Experiment, TrialOutcome, TrialResult


class TrialScheduler:
    """Turns experiments into scheduled trials and runs them."""

    def __init__(
        self,
        run_trial: Callable[[Trial], TrialResult],
        max_parallel_trials: int = MAX_PARALLEL_TRIALS,
    ) -> None:
        """Initialise the scheduler.

        Args:
            run_trial: Runs one trial, raising TrialFailureError on failure.
            max_parallel_trials: Upper bound on concurrently running trials.
        """
        self.run_trial = run_trial
        self.max_parallel_trials = max(1, max_parallel_trials)
        self._total = 0

    def schedule(
        self, experiments: Sequence[Experiment], trials_per_experiment: int
    ) -> list[ScheduledTrial]:
        """Create the scheduled trials for a batch.

        Trials are interleaved: every experiment's first trial, then every
        experiment's second trial, and so on.

        Returns:
            Scheduled trials numbered from 1 in run order.
        """
        scheduled = []
        for number, (_, experiment) in enumerate(
            itertools.product(range(trials_per_experiment), experiments), start=1
        ):
            trial = Trial(experiment, trial_number=number)
            scheduled.append(
                ScheduledTrial(
                    trial=trial,
                    task=functools.partial(self.run_trial, trial),
                    policy=experiment.scheduling_policy,
                )
            )
        return scheduled

    def run(self, scheduled: Iterable[ScheduledTrial]) -> Iterator[TrialOutcome]:
        """Run scheduled trials, yielding each outcome as it becomes known.

        Every trial yields exactly one outcome; failures never stop the batch.

        Yields:
            ``(trial, result_or_failure)`` pairs.
        """
        scheduled = list(scheduled)
        self._total = len(scheduled)
        started = time.monotonic()
        failures = 0

        for policy, group in itertools.groupby(scheduled, key=lambda s: s.policy):
            if policy is SchedulingPolicy.PARALLEL:
                outcomes = self._run_parallel(list(group))
            else:
                outcomes = map(self._execute, group)
            for outcome in outcomes:
                if isinstance(outcome[1], TrialFailure):
                    failures += 1
                yield outcome

        logger.info(
            "🏁 Ran %d trial(s) in %.1fs, %d failed",
            self._total,
            time.monotonic() - started,
            failures,
        )

    def _run_parallel(self, group: list[ScheduledTrial]) -> Iterator[TrialOutcome]:
        workers = min(self.max_parallel_trials, len(group))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="trial") as pool:
            futures = [pool.submit(self._execute, scheduled) for scheduled in group]
            for future in as_completed(futures):
                yield future.result()

    def _execute(self, scheduled: ScheduledTrial) -> TrialOutcome:
        """Run one trial, converting any failure into a TrialFailure value.

        Returns:
            The trial and its result or failure.
        """
        trial = scheduled.trial
        task = scheduled.take_task()
        logger.info(
            "🚀 Starting trial %d of %d: %s", trial.trial_number, self._total, trial.experiment
        )
        try:
            result = task()
        except TrialFailureError as e:
            failure = TrialFailure(trial, e.kind, str(e), e.output_file)
            logger.error("❌ Trial %d failed: %s", trial.trial_number, failure.describe())
            return trial, failure
        except Exception as e:
            logger.exception("Unexpected error in trial %d", trial.trial_number)
            return trial, TrialFailure(trial, FailureKind.UNEXPECTED, f"{type(e).__name__}: {e}")
        finally:
            trial.close()

        logger.info(
            "✅ Trial %d complete: %d measurement(s) in %.1fs",
            trial.trial_number,
            len(trial.measurements),
            result.elapsed_seconds,
        )
        return trial, result

"""Runner-side behaviour of each instrument.

The instrument is a property of the experiment and is resolved here, at
trial dispatch, into a collection policy, the options its worker needs and
the experiment's scheduling policy.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .models import InstrumentKind, WorkerSpec
from .policies import (
    AllocationCollectionPolicy,
    CollectionPolicy,
    RepBasedCollectionPolicy,
    SingleInvocationCollectionPolicy,
)

if TYPE_CHECKING:
    from .models import RunnerConfig, Trial


def create_collection_policy(kind: InstrumentKind, config: RunnerConfig) -> CollectionPolicy:
    """Build a fresh collection policy for one trial.

    Returns:
        The policy matching the instrument.
    """
    warmup_nanos = config.warmup * 1e9
    match kind:
        case InstrumentKind.RUNTIME:
            return RepBasedCollectionPolicy(
                config.measurements_per_trial, warmup_nanos, config.max_warmup_wall_time
            )
        case InstrumentKind.MACRO:
            return SingleInvocationCollectionPolicy(
                config.measurements_per_trial, warmup_nanos, config.max_warmup_wall_time
            )
        case InstrumentKind.ALLOCATION:
            return AllocationCollectionPolicy(config.measurements_per_trial)


def worker_options(kind: InstrumentKind, config: RunnerConfig) -> dict[str, Any]:
    """Options forwarded to the worker for an instrument.

    Returns:
        A JSON-compatible dictionary.
    """
    match kind:
        case InstrumentKind.RUNTIME:
            return {
                "timing_interval_nanos": config.timing_interval_nanos,
                "jitter_fraction": config.jitter_fraction,
                "gc_before_each": config.gc_before_each,
            }
        case InstrumentKind.MACRO:
            return {"gc_before_each": config.gc_before_each}
        case InstrumentKind.ALLOCATION:
            return {}


def build_worker_spec(trial: Trial, config: RunnerConfig) -> WorkerSpec:
    """Describe a trial to the worker process that will run it.

    Returns:
        The worker spec.
    """
    method = trial.experiment.instrumented_method
    return WorkerSpec(
        trial_id=trial.trial_id,
        benchmark_class=method.benchmark_class,
        method_name=method.method_name,
        instrument=method.instrument,
        parameters=trial.experiment.parameter_dict,
        options=worker_options(method.instrument, config),
    )

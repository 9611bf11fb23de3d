from __future__ import annotations

import pytest

from trialrunner.errors import ProtocolViolationError, UserBenchmarkError
from trialrunner.instruments import build_worker_spec, create_collection_policy, worker_options
from trialrunner.models import InstrumentKind, Measurement, RunnerConfig, SchedulingPolicy, Trial
from trialrunner.policies import (
    AllocationCollectionPolicy,
    CollectionPolicy,
    RepBasedCollectionPolicy,
    SingleInvocationCollectionPolicy,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def ns(magnitude: float, weight: float = 1) -> Measurement:
    return Measurement(magnitude=magnitude, unit="ns", weight=weight, description="runtime")


def test_base_policy_is_done_after_enough_measurements() -> None:
    policy = CollectionPolicy(measurements_per_trial=2)
    assert policy.is_warmup_complete()
    policy.record([ns(1)])
    assert not policy.is_done_collecting()
    policy.record([ns(2)])
    assert policy.is_done_collecting()
    assert policy.measurements() == [ns(1), ns(2)]


def test_rep_based_warmup_measurements_are_discarded() -> None:
    clock = FakeClock()
    policy = RepBasedCollectionPolicy(2, warmup_nanos=100, max_warmup_wall_seconds=60, clock=clock)
    assert not policy.is_warmup_complete()

    policy.start_interval()
    policy.record([ns(60)])
    assert not policy.is_warmup_complete()
    policy.start_interval()
    policy.record([ns(60)])
    assert policy.is_warmup_complete()
    assert policy.measurements() == []

    policy.start_interval()
    policy.record([ns(70, weight=7)])
    policy.start_interval()
    policy.record([ns(80, weight=8)])
    assert policy.measurements() == [ns(70, weight=7), ns(80, weight=8)]
    assert policy.is_done_collecting()
    assert not any(m.startswith("WARNING") for m in policy.messages())


def test_rep_based_warmup_is_capped_by_wall_time() -> None:
    clock = FakeClock()
    policy = RepBasedCollectionPolicy(
        1, warmup_nanos=10**12, max_warmup_wall_seconds=5, clock=clock
    )
    policy.start_interval()
    policy.record([ns(1000)])
    assert not policy.is_warmup_complete()

    clock.now = 6.0
    assert policy.is_warmup_complete()
    policy.start_interval()
    policy.record([ns(1000)])
    assert policy.is_done_collecting()
    warnings = [m for m in policy.messages() if m.startswith("WARNING")]
    assert len(warnings) == 1
    assert "Warmup was interrupted" in warnings[0]


def test_rep_based_warmup_must_be_in_nanoseconds() -> None:
    policy = RepBasedCollectionPolicy(1, warmup_nanos=100, max_warmup_wall_seconds=60)
    with pytest.raises(ProtocolViolationError):
        policy.record([Measurement(magnitude=1, unit="bytes", weight=1, description="x")])


def test_rep_based_suggests_macro_for_slow_reps() -> None:
    policy = RepBasedCollectionPolicy(
        1, warmup_nanos=0, max_warmup_wall_seconds=60, granularity_nanos=1
    )
    policy.record([ns(5000, weight=2)])
    assert any(m.startswith("INFO") for m in policy.messages())


def test_rep_based_does_not_suggest_macro_for_fast_reps() -> None:
    policy = RepBasedCollectionPolicy(
        1, warmup_nanos=0, max_warmup_wall_seconds=60, granularity_nanos=1
    )
    policy.record([ns(5000, weight=100)])
    assert policy.messages() == []


def test_single_invocation_rejects_measurements_near_granularity() -> None:
    policy = SingleInvocationCollectionPolicy(
        3, warmup_nanos=0, max_warmup_wall_seconds=60, granularity_nanos=10
    )
    policy.record([ns(5000)])
    with pytest.raises(UserBenchmarkError, match="granularity"):
        policy.record([ns(50)])


def test_single_invocation_never_suggests_macro() -> None:
    policy = SingleInvocationCollectionPolicy(
        1, warmup_nanos=0, max_warmup_wall_seconds=60, granularity_nanos=1
    )
    policy.record([ns(10**6)])
    assert policy.is_done_collecting()
    assert policy.messages() == []


def test_allocation_policy_requires_bytes() -> None:
    policy = AllocationCollectionPolicy(2)
    assert policy.is_warmup_complete()
    policy.record([Measurement(magnitude=64, unit="bytes", weight=1, description="allocation")])
    with pytest.raises(ProtocolViolationError):
        policy.record([ns(64)])


@pytest.mark.parametrize(
    ("kind", "policy_type", "scheduling"),
    [
        (InstrumentKind.RUNTIME, RepBasedCollectionPolicy, SchedulingPolicy.SERIAL),
        (InstrumentKind.MACRO, SingleInvocationCollectionPolicy, SchedulingPolicy.SERIAL),
        (InstrumentKind.ALLOCATION, AllocationCollectionPolicy, SchedulingPolicy.PARALLEL),
    ],
)
def test_instrument_dispatch(
    kind: InstrumentKind,
    policy_type: type,
    scheduling: SchedulingPolicy,
    make_experiment,
    fast_config: RunnerConfig,
) -> None:
    policy = create_collection_policy(kind, fast_config)
    assert type(policy) is policy_type
    assert policy.measurements_per_trial == fast_config.measurements_per_trial
    assert make_experiment(kind).scheduling_policy is scheduling


def test_runtime_worker_spec_carries_calibration_options(
    trial: Trial, fast_config: RunnerConfig
) -> None:
    spec = build_worker_spec(trial, fast_config)
    assert spec.trial_id == trial.trial_id
    assert spec.parameters == {"size": "5"}
    assert spec.options["timing_interval_nanos"] == 5_000_000
    assert spec.options["jitter_fraction"] == fast_config.jitter_fraction
    assert type(spec).from_json(spec.to_json()) == spec


def test_allocation_worker_needs_no_options(fast_config: RunnerConfig) -> None:
    assert worker_options(InstrumentKind.ALLOCATION, fast_config) == {}

"""Trial execution and measurement calibration for subprocess benchmarks.

This package launches isolated worker processes for parameterised benchmark
experiments, matches each worker's connection back to its trial, drives the
warmup/measurement protocol and schedules many trials with failure isolation.
"""

from __future__ import annotations

"""Loading benchmark classes and calling their optional hooks."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _coerce(value: str, default: Any) -> Any:
    """Convert a parameter string to the type of the class-level default."""
    if isinstance(default, bool):
        return value.lower() in _TRUE_VALUES
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def load_benchmark(reference: str, parameters: Mapping[str, str]) -> Any:
    """Import a benchmark class, instantiate it and apply its parameters.

    Parameter values arrive as strings and are converted to the type of the
    matching class attribute when it has a bool, int or float default.

    Args:
        reference: ``package.module:ClassName``.
        parameters: Parameter assignment for this experiment.

    Returns:
        The benchmark instance.

    Raises:
        ValueError: If the reference is malformed or a parameter cannot be converted.
        ImportError: If the module cannot be imported.
        AttributeError: If the class does not exist.
    """
    module_name, _, class_name = reference.partition(":")
    if not module_name or not class_name:
        msg = f"Benchmark reference must look like 'module:Class', got {reference!r}"
        raise ValueError(msg)
    benchmark_class = getattr(importlib.import_module(module_name), class_name)
    benchmark = benchmark_class()
    for name, value in parameters.items():
        setattr(benchmark, name, _coerce(value, getattr(benchmark_class, name, None)))
    return benchmark


def bound_method(benchmark: Any, name: str) -> Callable[..., Any]:
    """Look up the benchmark method to measure.

    Returns:
        The bound method.

    Raises:
        AttributeError: If the benchmark has no callable of that name.
    """
    method = getattr(benchmark, name, None)
    if not callable(method):
        msg = f"{type(benchmark).__name__} has no benchmark method {name!r}"
        raise AttributeError(msg)
    return method


def call_hook(benchmark: Any, name: str) -> None:
    """Call an optional no-argument hook such as ``set_up`` if it is defined."""
    hook = getattr(benchmark, name, None)
    if callable(hook):
        hook()

"""
Runtime defaults for registration runs.

Worker count, candidate-face count, relaxation bound and the iteration cap can
be tuned through environment variables without touching call sites.
"""

from __future__ import annotations

from dataclasses import dataclass
import os


ENV_CORES = "ELASTICREG_CORES"
ENV_NN = "ELASTICREG_NN"
ENV_MAX_RELAXATIONS = "ELASTICREG_MAX_RELAXATIONS"
ENV_ITERATIONS = "ELASTICREG_ITERATIONS"


@dataclass(frozen=True)
class RuntimeDefaults:
    cores: int
    nn: int
    max_relaxations: int
    iterations: int


def _read_int_env(
    env_name: str,
    default: int,
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    raw = os.environ.get(env_name)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default

    if min_value is not None and value < min_value:
        return default
    if max_value is not None and value > max_value:
        return default
    return value


def load_runtime_defaults() -> RuntimeDefaults:
    max_cores = max(1, os.cpu_count() or 1)

    return RuntimeDefaults(
        cores=_read_int_env(ENV_CORES, 1, min_value=1, max_value=max_cores),
        nn=_read_int_env(ENV_NN, 20, min_value=1, max_value=1000),
        max_relaxations=_read_int_env(ENV_MAX_RELAXATIONS, 1000, min_value=0, max_value=1_000_000),
        iterations=_read_int_env(ENV_ITERATIONS, 15, min_value=0, max_value=100_000),
    )


DEFAULTS = load_runtime_defaults()

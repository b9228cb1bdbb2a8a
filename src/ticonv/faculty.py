"""Compute faculties: which device path runs the convolution kernels."""
from __future__ import annotations

import os
from enum import IntEnum
import importlib.util


class Faculty(IntEnum):
    """Available compute tiers."""

    NUMPY = 1  # Host path, reference numerics
    TORCH = 2  # Accelerator-offloaded path (CUDA when present)


FORCE_ENV = "TICONV_FACULTY"


def parse_faculty(value) -> Faculty:
    """Coerce ``value`` (enum, int or name) to a :class:`Faculty`."""
    if isinstance(value, Faculty):
        return value
    if isinstance(value, int):
        return Faculty(value)
    try:
        return Faculty[str(value).strip().upper()]
    except KeyError as exc:
        raise ValueError(f"Unknown faculty: {value!r}") from exc


def detect_faculty() -> Faculty:
    """Return the default faculty.

    The host path is the default. The environment variable
    ``TICONV_FACULTY`` may be set to force a specific tier.
    """
    forced = os.environ.get(FORCE_ENV)
    if forced:
        return parse_faculty(forced)
    return Faculty.NUMPY


def available_faculties() -> list[Faculty]:
    """Return all faculty tiers available in the current environment."""
    levels = [Faculty.NUMPY]
    if importlib.util.find_spec("torch") is not None:
        levels.append(Faculty.TORCH)
    return levels

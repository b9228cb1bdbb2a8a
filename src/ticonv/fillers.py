"""Weight and bias initialisers."""
from __future__ import annotations

import math
from typing import Tuple

import numpy as np

from .config import FillerSpec


def fan_in_out(shape: Tuple[int, ...]) -> Tuple[int, int]:
    """Return ``(fan_in, fan_out)`` for a conv filter bank or a bias vector."""
    if len(shape) < 2:
        n = int(shape[0]) if shape else 1
        return n, n
    receptive = int(np.prod(shape[2:])) if len(shape) > 2 else 1
    return int(shape[1]) * receptive, int(shape[0]) * receptive


def fill(spec: FillerSpec, shape, *, rng: np.random.Generator, dtype=np.float32) -> np.ndarray:
    """Create an array of ``shape`` initialised according to ``spec``."""
    shape = tuple(int(s) for s in shape)
    fan_in, fan_out = fan_in_out(shape)
    if spec.type == "constant":
        data = np.full(shape, spec.value)
    elif spec.type == "gaussian":
        data = rng.normal(spec.mean, spec.std, size=shape)
    elif spec.type == "uniform":
        data = rng.uniform(spec.min, spec.max, size=shape)
    elif spec.type == "xavier":
        bound = math.sqrt(3.0 / float(fan_in))
        data = rng.uniform(-bound, bound, size=shape)
    elif spec.type == "he":
        data = rng.normal(0.0, math.sqrt(2.0 / float(fan_in)), size=shape)
    else:  # pragma: no cover - FillerSpec validates the type
        raise ValueError(f"unknown filler type {spec.type!r}")
    return np.ascontiguousarray(data, dtype=dtype)

"""
catalog.py
----------

Turns an ordered list of :class:`~ticonv.config.TransformSpec` into one
:class:`SamplingMap` per variant.

A sampling map answers, for every tap of the transformed kernel, "which taps
of the base kernel does this value come from, and with what weight?". The
same map drives the forward resampling and, as its adjoint, the gradient
fold in the backward pass.

Geometry works in a kernel-centred frame with rows pointing down. Each
transformed tap is pulled back through the inverse transform (inverse
rotation, then inverse scale) to a continuous source coordinate.
Source taps outside the base kernel are zero padding: they are dropped and
bilinear weights are NOT renormalised, so taps near the border may carry a
total weight below one.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, List, Sequence, Tuple

import numpy as np

from .config import ConfigurationError, Interpolation, TransformSpec

SENTINEL = -1
MAX_SOURCES = 4
_SNAP_EPS = 1e-9


@dataclass(frozen=True, eq=False)
class SamplingMap:
    """Per-tap source indices and weights for one variant.

    ``index`` and ``weights`` have shape ``(kh * kw, 4)``. Unused slots hold
    :data:`SENTINEL` with weight ``0``. Taps are flattened row-major, matching
    the trailing ``(kh, kw)`` axes of a filter bank.
    """

    spec: TransformSpec
    kernel_size: Tuple[int, int]
    index: np.ndarray
    weights: np.ndarray

    @property
    def num_taps(self) -> int:
        return self.kernel_size[0] * self.kernel_size[1]

    @property
    def gather_index(self) -> np.ndarray:
        """``index`` with sentinels redirected to tap 0 (their weight is 0)."""
        return np.where(self.index < 0, 0, self.index)

    @property
    def is_identity(self) -> bool:
        eye = np.arange(self.num_taps)
        return bool(
            np.all(self.index[:, 0] == eye)
            and np.all(self.weights[:, 0] == 1.0)
            and np.all(self.weights[:, 1:] == 0.0)
        )

    def coverage(self) -> np.ndarray:
        """Total source weight per output tap, shaped ``(kh, kw)``."""
        return self.weights.sum(axis=1).reshape(self.kernel_size)

    def sources(self, tap: int) -> List[Tuple[int, float]]:
        """``(source_tap, weight)`` pairs contributing to ``tap``."""
        return [
            (int(i), float(w))
            for i, w in zip(self.index[tap], self.weights[tap])
            if i != SENTINEL and w != 0.0
        ]

    def dense(self) -> np.ndarray:
        """Dense ``(P, P)`` operator ``M`` with ``transformed = M @ base``."""
        P = self.num_taps
        mat = np.zeros((P, P), dtype=np.float64)
        rows = np.repeat(np.arange(P), MAX_SOURCES)
        np.add.at(mat, (rows, self.gather_index.reshape(-1)), self.weights.reshape(-1))
        return mat


def _snap(v: float) -> float:
    r = round(v)
    return float(r) if abs(v - r) < _SNAP_EPS else v


def _source_coordinate(spec: TransformSpec, i: int, j: int, kh: int, kw: int) -> Tuple[float, float]:
    cy = (kh - 1) / 2.0
    cx = (kw - 1) / 2.0
    y = i - cy
    x = j - cx
    theta = math.radians(spec.rotation)
    c, s = math.cos(theta), math.sin(theta)
    ys = (x * s + y * c) / spec.scale
    xs = (x * c - y * s) / spec.scale
    return _snap(ys + cy), _snap(xs + cx)


def build_sampling_map(spec: TransformSpec, kernel_size: Tuple[int, int]) -> SamplingMap:
    """Build the sampling map of ``spec`` for a ``kernel_size`` kernel."""
    kh, kw = kernel_size
    if kh <= 0 or kw <= 0:
        raise ConfigurationError(f"kernel_size must be positive, got {kernel_size}")
    P = kh * kw
    index = np.full((P, MAX_SOURCES), SENTINEL, dtype=np.int64)
    weights = np.zeros((P, MAX_SOURCES), dtype=np.float64)

    if spec.is_identity:
        index[:, 0] = np.arange(P)
        weights[:, 0] = 1.0
        return SamplingMap(spec, (kh, kw), index, weights)

    def inside(r, c):
        return 0 <= r < kh and 0 <= c < kw

    for i in range(kh):
        for j in range(kw):
            tap = i * kw + j
            ys, xs = _source_coordinate(spec, i, j, kh, kw)
            if spec.interp is Interpolation.NEAREST:
                r = int(math.floor(ys + 0.5))
                c = int(math.floor(xs + 0.5))
                if inside(r, c):
                    index[tap, 0] = r * kw + c
                    weights[tap, 0] = 1.0
            elif spec.interp is Interpolation.BILINEAR:
                r0 = int(math.floor(ys))
                c0 = int(math.floor(xs))
                dy = ys - r0
                dx = xs - c0
                corners = (
                    (r0, c0, (1.0 - dy) * (1.0 - dx)),
                    (r0, c0 + 1, (1.0 - dy) * dx),
                    (r0 + 1, c0, dy * (1.0 - dx)),
                    (r0 + 1, c0 + 1, dy * dx),
                )
                for slot, (r, c, w) in enumerate(corners):
                    if w > 0.0 and inside(r, c):
                        index[tap, slot] = r * kw + c
                        weights[tap, slot] = w
            else:  # pragma: no cover - TransformSpec validates interp
                raise ConfigurationError(f"unsupported interpolation {spec.interp!r}")
    return SamplingMap(spec, (kh, kw), index, weights)


class TransformCatalog:
    """Ordered, immutable collection of sampling maps, one per variant.

    Built once at layer setup. Variant ``v`` of the catalog is the ``v``-th
    configured transform; argmax maps index into this order.
    """

    def __init__(self, specs: Sequence, kernel_size: Tuple[int, int]):
        specs = tuple(TransformSpec.from_value(s) for s in specs)
        if not specs:
            raise ConfigurationError("at least one transform is required")
        self.specs = specs
        self.kernel_size = (int(kernel_size[0]), int(kernel_size[1]))
        self.maps = tuple(build_sampling_map(s, self.kernel_size) for s in specs)

    def __len__(self) -> int:
        return len(self.maps)

    def __iter__(self) -> Iterator[SamplingMap]:
        return iter(self.maps)

    def __getitem__(self, v: int) -> SamplingMap:
        return self.maps[v]

    def __repr__(self):
        kinds = ", ".join(
            f"{s.kind.value}(scale={s.scale:g}, rot={s.rotation:g}, {s.interp.value})" for s in self.specs
        )
        return f"TransformCatalog(kernel={self.kernel_size}, variants=[{kinds}])"

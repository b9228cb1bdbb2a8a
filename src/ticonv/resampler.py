"""
resampler.py
------------

Applies a :class:`~ticonv.catalog.SamplingMap` to a filter bank and folds
gradients back through it.

``resample`` is a linear operator ``R`` acting on the ``kh*kw`` taps of every
``(out, in)`` kernel; ``fold_gradient`` is exactly ``R^T`` built from the same
weights, so ``<R w, g> == <w, R^T g>`` for any ``w`` and ``g``.
"""
from __future__ import annotations

from concurrent.futures import Executor
from typing import List, Optional, Sequence

from .catalog import SamplingMap, TransformCatalog


class KernelResampler:
    """Resample filter banks on one compute backend."""

    def __init__(self, backend):
        self.backend = backend

    def resample(self, base, sampling_map: SamplingMap):
        if tuple(base.shape[2:]) != tuple(sampling_map.kernel_size):
            raise ValueError(
                f"filter bank kernel {tuple(base.shape[2:])} does not match sampling map {sampling_map.kernel_size}"
            )
        if sampling_map.is_identity:
            return base
        return self.backend.resample(base, sampling_map)

    def resample_all(self, base, catalog: TransformCatalog, executor: Optional[Executor] = None) -> List:
        """One transformed bank per variant, in catalog order."""
        if executor is None:
            return [self.resample(base, m) for m in catalog]
        return list(executor.map(lambda m: self.resample(base, m), catalog))

    def fold_gradient(self, grad, sampling_map: SamplingMap, out=None):
        if sampling_map.is_identity:
            if out is None:
                return grad
            out += grad
            return out
        return self.backend.fold_gradient(grad, sampling_map, out=out)

    def fold_all(self, grads: Sequence, catalog: TransformCatalog, out):
        """Accumulate every variant's gradient into ``out`` in variant order.

        ``None`` entries (variants that never won) are skipped.
        """
        for grad, sampling_map in zip(grads, catalog):
            if grad is not None:
                out = self.fold_gradient(grad, sampling_map, out=out)
        return out

"""Interface every compute backend implements.

A backend bundles the two capabilities that depend on the device: the plain
grouped convolution (ConvCore) and the kernel resampling primitives. All
tensors passed to a backend method are that backend's native type; use
:meth:`asarray` / :meth:`to_numpy` at the boundary.
"""
from __future__ import annotations

from typing import Any, Sequence, Tuple

import numpy as np

from ..faculty import Faculty


class ComputeBackend:
    faculty: Faculty
    name: str = "abstract"

    # --- conversion -----------------------------------------------------
    def asarray(self, data, dtype=None) -> Any:
        raise NotImplementedError

    def to_numpy(self, tensor) -> np.ndarray:
        raise NotImplementedError

    def zeros_like(self, tensor) -> Any:
        raise NotImplementedError

    def zeros(self, shape, like) -> Any:
        """Zeros of ``shape`` with the dtype and device of ``like``."""
        raise NotImplementedError

    # --- ConvCore -------------------------------------------------------
    def conv_forward(self, x, w, b, stride: Tuple[int, int], padding: Tuple[int, int], groups: int):
        """Grouped 2-D cross-correlation with zero padding; ``b`` may be None."""
        raise NotImplementedError

    def conv_backward(self, grad_out, w, x, stride: Tuple[int, int], padding: Tuple[int, int], groups: int):
        """Return ``(grad_input, grad_weight, grad_bias)`` for :meth:`conv_forward`."""
        raise NotImplementedError

    # --- resampling -----------------------------------------------------
    def resample(self, base, sampling_map):
        """Resample every ``(out, in)`` kernel of ``base`` through ``sampling_map``."""
        raise NotImplementedError

    def fold_gradient(self, grad, sampling_map, out=None):
        """Adjoint of :meth:`resample`; accumulates into ``out`` when given."""
        raise NotImplementedError

    # --- selection ------------------------------------------------------
    def select_max(self, responses: Sequence[Any]):
        """Element-wise max over ``responses`` and the index of the first maximum."""
        raise NotImplementedError

    def mask_where(self, grad, argmax, variant: int):
        """``grad`` where ``argmax == variant``, zero elsewhere."""
        raise NotImplementedError

    def count_wins(self, argmax, num_variants: int) -> np.ndarray:
        return np.bincount(self.to_numpy(argmax).reshape(-1), minlength=num_variants)

    def __repr__(self):
        return f"{type(self).__name__}()"

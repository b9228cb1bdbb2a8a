"""NumPy (host) implementation of :class:`ComputeBackend`.

Convolution is im2col based: :func:`unfold2d` gathers every receptive field
into a column, a grouped ``einsum`` does the products, and :func:`fold2d`
scatters column gradients back onto the input grid.
"""
from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from ..faculty import Faculty
from . import register_backend
from .base import ComputeBackend


def _to_tuple2(x):
    """Normalize an int or 2-tuple to a 2-tuple."""
    return (x, x) if isinstance(x, (int, np.integer)) else tuple(x)


def unfold2d(x: np.ndarray, kernel_size, stride=1, padding=0) -> np.ndarray:
    """``(N, C, H, W)`` -> ``(N, C*kH*kW, Hout*Wout)`` patch columns."""
    kH, kW = _to_tuple2(kernel_size)
    sH, sW = _to_tuple2(stride)
    pH, pW = _to_tuple2(padding)
    x = np.pad(x, ((0, 0), (0, 0), (pH, pH), (pW, pW)), mode="constant")
    win = sliding_window_view(x, window_shape=(kH, kW), axis=(2, 3))
    win = win[:, :, ::sH, ::sW]
    N, C, Hout, Wout, KH, KW = win.shape
    return win.transpose(0, 1, 4, 5, 2, 3).reshape(N, C * KH * KW, Hout * Wout)


def fold2d(cols: np.ndarray, output_size, kernel_size, stride=1, padding=0) -> np.ndarray:
    """Adjoint of :func:`unfold2d`: sum patch columns back into ``output_size``."""
    N, C, H, W = output_size
    kH, kW = _to_tuple2(kernel_size)
    sH, sW = _to_tuple2(stride)
    pH, pW = _to_tuple2(padding)
    Hpad, Wpad = H + 2 * pH, W + 2 * pW
    Hout = (Hpad - kH) // sH + 1
    Wout = (Wpad - kW) // sW + 1
    cols6 = cols.reshape(N, C, kH, kW, Hout, Wout)
    ypad = np.zeros((N, C, Hpad, Wpad), dtype=cols.dtype)
    for i in range(kH):
        hi_end = i + sH * Hout
        for j in range(kW):
            wj_end = j + sW * Wout
            np.add.at(
                ypad,
                (slice(None), slice(None), slice(i, hi_end, sH), slice(j, wj_end, sW)),
                cols6[:, :, i, j, :, :],
            )
    return ypad[:, :, pH : Hpad - pH, pW : Wpad - pW]


class NumPyBackend(ComputeBackend):
    faculty = Faculty.NUMPY
    name = "numpy"

    def asarray(self, data, dtype=None):
        return np.asarray(data, dtype=dtype)

    def to_numpy(self, tensor):
        return np.asarray(tensor)

    def zeros_like(self, tensor):
        return np.zeros_like(tensor)

    def zeros(self, shape, like):
        return np.zeros(shape, dtype=like.dtype)

    def conv_forward(self, x, w, b, stride, padding, groups):
        N, C, H, W = x.shape
        O, Cg, kH, kW = w.shape
        sH, sW = _to_tuple2(stride)
        pH, pW = _to_tuple2(padding)
        Hout = (H + 2 * pH - kH) // sH + 1
        Wout = (W + 2 * pW - kW) // sW + 1
        cols = unfold2d(x, (kH, kW), stride, padding)
        cols = cols.reshape(N, groups, Cg * kH * kW, Hout * Wout)
        wg = w.reshape(groups, O // groups, Cg * kH * kW)
        out = np.einsum("gok,ngkl->ngol", wg, cols)
        out = out.reshape(N, O, Hout, Wout)
        if b is not None:
            out = out + b.reshape(1, O, 1, 1)
        return out

    def conv_backward(self, grad_out, w, x, stride, padding, groups):
        N = x.shape[0]
        O, Cg, kH, kW = w.shape
        L = grad_out.shape[2] * grad_out.shape[3]
        cols = unfold2d(x, (kH, kW), stride, padding)
        cols = cols.reshape(N, groups, Cg * kH * kW, L)
        grad_mat = grad_out.reshape(N, groups, O // groups, L)
        wg = w.reshape(groups, O // groups, Cg * kH * kW)
        gW = np.einsum("ngol,ngkl->gok", grad_mat, cols).reshape(w.shape)
        gb = grad_out.sum(axis=(0, 2, 3))
        dcols = np.einsum("gok,ngol->ngkl", wg, grad_mat)
        dcols = dcols.reshape(N, groups * Cg * kH * kW, L)
        dx = fold2d(dcols, x.shape, (kH, kW), stride, padding)
        return dx, gW, gb

    def resample(self, base, sampling_map):
        O, Cg, kH, kW = base.shape
        idx = sampling_map.gather_index
        wts = sampling_map.weights.astype(base.dtype, copy=False)
        flat = base.reshape(O * Cg, kH * kW)
        out = (flat[:, idx] * wts).sum(axis=-1)
        return out.reshape(base.shape)

    def fold_gradient(self, grad, sampling_map, out=None):
        O, Cg, kH, kW = grad.shape
        idx = sampling_map.gather_index.reshape(-1)
        wts = sampling_map.weights.astype(grad.dtype, copy=False)
        flat = grad.reshape(O * Cg, kH * kW)
        contrib = (flat[:, :, None] * wts).reshape(O * Cg, -1)
        acc = np.zeros((O * Cg, kH * kW), dtype=grad.dtype)
        np.add.at(acc, (slice(None), idx), contrib)
        if out is None:
            return acc.reshape(grad.shape)
        out += acc.reshape(out.shape)
        return out

    def select_max(self, responses: Sequence[np.ndarray]) -> Tuple[np.ndarray, np.ndarray]:
        best = np.array(responses[0], copy=True)
        argmax = np.zeros(best.shape, dtype=np.int64)
        for v, resp in enumerate(responses[1:], start=1):
            better = resp > best
            best = np.where(better, resp, best)
            argmax[better] = v
        return best, argmax

    def mask_where(self, grad, argmax, variant):
        return np.where(argmax == variant, grad, np.zeros((), dtype=grad.dtype))


register_backend(Faculty.NUMPY, NumPyBackend)

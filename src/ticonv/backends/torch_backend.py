"""PyTorch (accelerator) implementation of :class:`ComputeBackend`.

Runs on CUDA when it is available, otherwise on the torch CPU kernels. The
device can be forced with the ``TICONV_DEVICE`` environment variable.
"""
from __future__ import annotations

import os
from typing import Sequence

import numpy as np

try:
    import torch
    import torch.nn.functional as F
    from torch.nn.grad import conv2d_input, conv2d_weight
except ModuleNotFoundError:  # pragma: no cover - optional dependency
    torch = None  # type: ignore

from ..faculty import Faculty
from ..logger import get_ticonv_logger
from . import register_backend
from .base import ComputeBackend

logger = get_ticonv_logger()

DEVICE_ENV = "TICONV_DEVICE"


def _default_device() -> str:
    forced = os.environ.get(DEVICE_ENV)
    if forced:
        return forced
    return "cuda" if torch.cuda.is_available() else "cpu"


class TorchBackend(ComputeBackend):
    faculty = Faculty.TORCH
    name = "torch"

    def __init__(self, device: str | None = None):
        if torch is None:
            raise RuntimeError("the TORCH faculty requires PyTorch to be installed")
        self.device = torch.device(device or _default_device())
        logger.info(f"torch backend on device {self.device}")

    def asarray(self, data, dtype=None):
        if isinstance(data, torch.Tensor):
            t = data.to(self.device)
        else:
            t = torch.as_tensor(np.asarray(data, dtype=dtype), device=self.device)
        return t

    def to_numpy(self, tensor):
        if isinstance(tensor, torch.Tensor):
            return tensor.detach().cpu().numpy()
        return np.asarray(tensor)

    def zeros_like(self, tensor):
        return torch.zeros_like(tensor)

    def zeros(self, shape, like):
        return torch.zeros(tuple(shape), dtype=like.dtype, device=like.device)

    def conv_forward(self, x, w, b, stride, padding, groups):
        with torch.no_grad():
            return F.conv2d(x, w, b, stride=tuple(stride), padding=tuple(padding), groups=groups)

    def conv_backward(self, grad_out, w, x, stride, padding, groups):
        stride = tuple(stride)
        padding = tuple(padding)
        with torch.no_grad():
            dx = conv2d_input(x.shape, w, grad_out, stride=stride, padding=padding, groups=groups)
            gW = conv2d_weight(x, w.shape, grad_out, stride=stride, padding=padding, groups=groups)
            gb = grad_out.sum(dim=(0, 2, 3))
        return dx, gW, gb

    def _map_tensors(self, sampling_map, dtype):
        idx = torch.as_tensor(sampling_map.gather_index, device=self.device)
        wts = torch.as_tensor(sampling_map.weights, device=self.device, dtype=dtype)
        return idx, wts

    def resample(self, base, sampling_map):
        O, Cg, kH, kW = base.shape
        idx, wts = self._map_tensors(sampling_map, base.dtype)
        flat = base.reshape(O * Cg, kH * kW)
        out = (flat[:, idx] * wts).sum(dim=-1)
        return out.reshape(base.shape)

    def fold_gradient(self, grad, sampling_map, out=None):
        O, Cg, kH, kW = grad.shape
        idx, wts = self._map_tensors(sampling_map, grad.dtype)
        flat = grad.reshape(O * Cg, kH * kW)
        contrib = (flat[:, :, None] * wts).reshape(O * Cg, -1)
        acc = torch.zeros((O * Cg, kH * kW), dtype=grad.dtype, device=grad.device)
        acc.index_add_(1, idx.reshape(-1), contrib)
        if out is None:
            return acc.reshape(grad.shape)
        out += acc.reshape(out.shape)
        return out

    def select_max(self, responses: Sequence["torch.Tensor"]):
        best = responses[0].clone()
        argmax = torch.zeros(best.shape, dtype=torch.int64, device=best.device)
        for v, resp in enumerate(responses[1:], start=1):
            better = resp > best
            best = torch.where(better, resp, best)
            argmax[better] = v
        return best, argmax

    def mask_where(self, grad, argmax, variant):
        return torch.where(argmax == variant, grad, torch.zeros_like(grad))

    def __repr__(self):
        return f"TorchBackend(device={str(self.device)!r})"


if torch is not None:
    register_backend(Faculty.TORCH, TorchBackend)

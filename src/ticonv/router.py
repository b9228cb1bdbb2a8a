"""
router.py
---------

Backward pass of the TI convolution.

The upstream gradient is split by the argmax map: variant ``v`` only sees
the gradient of the output elements it won. Each variant then runs a plain
convolution backward with its own transformed bank, and the pieces are
summed. Because every output element is owned by exactly one variant, the
input-gradient sum never double counts. Weight gradients live in the
transformed space and are folded back onto the base bank through the
sampling maps.
"""
from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from .catalog import TransformCatalog
from .logger import get_ticonv_logger
from .resampler import KernelResampler

logger = get_ticonv_logger()


@dataclass
class RoutedGradients:
    input_grad: Any
    weight_grad: Any
    bias_grad: Any


class GradientRouter:
    def __init__(
        self,
        backend,
        catalog: TransformCatalog,
        stride: Tuple[int, int],
        padding: Tuple[int, int],
        groups: int,
    ):
        self.backend = backend
        self.catalog = catalog
        self.resampler = KernelResampler(backend)
        self.stride = stride
        self.padding = padding
        self.groups = groups

    def _variant_backward(self, v: int, grad_out, argmax, bank, x, wins):
        if wins[v] == 0:
            return None
        masked = self.backend.mask_where(grad_out, argmax, v)
        return self.backend.conv_backward(masked, bank, x, self.stride, self.padding, self.groups)

    def backward(
        self,
        grad_out,
        argmax,
        banks: Sequence[Any],
        x,
        *,
        executor: Optional[Executor] = None,
    ) -> RoutedGradients:
        if len(banks) != len(self.catalog):
            raise ValueError(f"expected {len(self.catalog)} filter banks, got {len(banks)}")
        if tuple(grad_out.shape) != tuple(argmax.shape):
            raise ValueError(
                f"gradient shape {tuple(grad_out.shape)} does not match argmax shape {tuple(argmax.shape)}"
            )
        wins = self.backend.count_wins(argmax, len(banks))
        variants = range(len(banks))
        if executor is None:
            parts = [self._variant_backward(v, grad_out, argmax, banks[v], x, wins) for v in variants]
        else:
            parts = list(
                executor.map(lambda v: self._variant_backward(v, grad_out, argmax, banks[v], x, wins), variants)
            )

        # accumulation is serial and in variant order; an empty batch leaves zeros
        input_grad = self.backend.zeros_like(x)
        bias_grad = self.backend.zeros((banks[0].shape[0],), like=banks[0])
        weight_grads: List[Any] = []
        for part in parts:
            if part is None:
                weight_grads.append(None)
                continue
            dx, gW, gb = part
            input_grad = input_grad + dx
            bias_grad = bias_grad + gb
            weight_grads.append(gW)

        weight_grad = self.backend.zeros_like(banks[0])
        weight_grad = self.resampler.fold_all(weight_grads, self.catalog, weight_grad)
        logger.debug(f"GradientRouter: routed {wins.tolist()} elements per variant")
        return RoutedGradients(input_grad, weight_grad, bias_grad)

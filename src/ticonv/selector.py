"""Per-variant convolution followed by max selection over the variant axis."""
from __future__ import annotations

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from .logger import get_ticonv_logger

logger = get_ticonv_logger()


@dataclass
class Selection:
    """Result of :meth:`ResponseSelector.forward`.

    ``argmax`` holds, per output element, the index of the first variant that
    attained the maximum. ``responses`` is only kept on request.
    """

    output: Any
    argmax: Any
    responses: Optional[List[Any]] = None

    def win_counts(self, backend, num_variants: int) -> np.ndarray:
        return backend.count_wins(self.argmax, num_variants)


class ResponseSelector:
    """Max-pool over the transformation axis.

    Parameters
    ----------
    backend : ComputeBackend
        Supplies ConvCore and the element-wise selection.
    stride, padding : (int, int)
    groups : int
    """

    def __init__(self, backend, stride: Tuple[int, int], padding: Tuple[int, int], groups: int):
        self.backend = backend
        self.stride = stride
        self.padding = padding
        self.groups = groups

    def _respond(self, x, bank, bias):
        return self.backend.conv_forward(x, bank, bias, self.stride, self.padding, self.groups)

    def forward(
        self,
        x,
        banks: Sequence[Any],
        bias=None,
        *,
        keep_responses: bool = False,
        executor: Optional[Executor] = None,
    ) -> Selection:
        if not banks:
            raise ValueError("ResponseSelector.forward needs at least one filter bank")
        # bias is applied per variant, before the max
        if executor is None:
            responses = [self._respond(x, bank, bias) for bank in banks]
        else:
            responses = list(executor.map(lambda bank: self._respond(x, bank, bias), banks))
        output, argmax = self.backend.select_max(responses)
        if logger.isEnabledFor(logging.DEBUG):
            counts = self.backend.count_wins(argmax, len(banks))
            logger.debug(f"ResponseSelector: output {tuple(output.shape)}, wins per variant {counts.tolist()}")
        return Selection(output, argmax, responses if keep_responses else None)

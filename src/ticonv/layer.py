"""
layer.py
--------

:class:`TIConv2d`, the transformation-invariant convolution layer.

The layer owns the base filter bank ``W`` (and bias ``b``) as NumPy arrays.
Every forward call resamples ``W`` into one bank per configured transform,
convolves the input with each bank and keeps the element-wise maximum. The
argmax map that routes the backward pass is returned in an explicit
:class:`ForwardContext`; when the caller does not keep one, the layer
remembers the most recent forward until the next ``backward``.

Example
-------
>>> layer = TIConv2d({"num_output": 4, "kernel_size": 3, "stride": 2,
...                   "transformations": ["identity", {"scale": 1.15}, {"rotation": 5}]})
>>> layer.setup((2, 3, 12, 10))
(2, 4, 5, 4)
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple

import numpy as np

from .backends import get_backend
from .catalog import TransformCatalog
from .config import ConfigurationError, ConvolutionConfig
from .faculty import Faculty, detect_faculty, parse_faculty
from .fillers import fill
from .logger import get_ticonv_logger
from .resampler import KernelResampler
from .router import GradientRouter
from .selector import ResponseSelector

logger = get_ticonv_logger()


def conv_output_size(in_size: int, kernel: int, stride: int, padding: int = 0) -> int:
    """``floor((in + 2*pad - kernel) / stride) + 1``; raises if the kernel does not fit."""
    span = in_size + 2 * padding - kernel
    if span < 0:
        raise ConfigurationError(
            f"kernel size {kernel} does not fit input size {in_size} with padding {padding}"
        )
    return span // stride + 1


@dataclass
class ForwardContext:
    """State bridging one forward call to its backward call."""

    backend: Any
    input: Any
    argmax: Any
    banks: List[Any]
    input_shape: Tuple[int, int, int, int]
    output_shape: Tuple[int, int, int, int]


class TIConv2d:
    """Transformation-invariant 2-D convolution.

    Parameters
    ----------
    config : ConvolutionConfig or mapping
    faculty : Faculty, str or int, optional
        Compute path; defaults to :func:`~ticonv.faculty.detect_faculty`.
    """

    def __init__(self, config: ConvolutionConfig | Mapping[str, Any], *, faculty=None):
        if not isinstance(config, ConvolutionConfig):
            config = ConvolutionConfig.from_dict(config)
        self.config = config
        self.dtype = np.dtype(config.dtype)
        self._faculty = detect_faculty() if faculty is None else parse_faculty(faculty)
        self.catalog: Optional[TransformCatalog] = None
        self.in_channels: Optional[int] = None
        self.W: Optional[np.ndarray] = None
        self.b: Optional[np.ndarray] = None
        self.gW: Optional[np.ndarray] = None
        self.gb: Optional[np.ndarray] = None
        self._context: Optional[ForwardContext] = None
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    # --- faculty ---
    @property
    def faculty(self) -> Faculty:
        return self._faculty

    def set_faculty(self, faculty) -> None:
        """Switch the compute path used by subsequent forward calls."""
        faculty = parse_faculty(faculty)
        get_backend(faculty)
        logger.debug(f"TIConv2d: faculty {self._faculty.name} -> {faculty.name}")
        self._faculty = faculty

    @property
    def backend(self):
        return get_backend(self._faculty)

    @property
    def num_variants(self) -> int:
        return len(self.config.transformations)

    # --- setup ---
    def setup(self, input_shape) -> Tuple[int, int, int, int]:
        """Validate ``input_shape``, build the catalog and initialise parameters."""
        cfg = self.config
        if len(input_shape) != 4:
            raise ConfigurationError(f"expected input shape (N, C, H, W), got {tuple(input_shape)}")
        N, C, H, W = (int(s) for s in input_shape)
        if C <= 0 or C % cfg.groups != 0:
            raise ConfigurationError(f"groups ({cfg.groups}) must divide input channels ({C})")
        output_shape = self._output_shape(N, H, W)

        self.catalog = TransformCatalog(cfg.transformations, cfg.kernel_size)
        if not self.catalog.specs[0].is_identity:
            logger.info("TIConv2d: first transform is not the identity")
        self.in_channels = C
        rng = np.random.default_rng(cfg.seed)
        kH, kW = cfg.kernel_size
        self.W = fill(cfg.weight_filler, (cfg.num_output, C // cfg.groups, kH, kW), rng=rng, dtype=self.dtype)
        self.b = fill(cfg.bias_filler, (cfg.num_output,), rng=rng, dtype=self.dtype) if cfg.bias_term else None
        self.zero_grad()
        logger.info(f"TIConv2d setup: input {(N, C, H, W)} -> output {output_shape}, {self.catalog!r}")
        return output_shape

    def _output_shape(self, N: int, H: int, W: int) -> Tuple[int, int, int, int]:
        cfg = self.config
        (kH, kW), (sH, sW), (pH, pW) = cfg.kernel_size, cfg.stride, cfg.padding
        Hout = conv_output_size(H, kH, sH, pH)
        Wout = conv_output_size(W, kW, sW, pW)
        return (N, cfg.num_output, Hout, Wout)

    # --- standard layer API ---
    def parameters(self) -> List[np.ndarray]:
        return [p for p in (self.W, self.b) if p is not None]

    def gradients(self) -> List[np.ndarray]:
        return [g for g in (self.gW, self.gb) if g is not None]

    def zero_grad(self):
        if self.W is not None:
            self.gW = np.zeros_like(self.W)
        if self.b is not None:
            self.gb = np.zeros_like(self.b)
        self._context = None

    def get_input_shape(self):
        # (batch, in_channels, H, W)
        return (None, self.in_channels, None, None)

    def transformed_filters(self) -> List[np.ndarray]:
        """Current transformed banks as NumPy arrays, one per variant."""
        self._require_setup()
        backend = self.backend
        resampler = KernelResampler(backend)
        base = backend.asarray(self.W, dtype=self.dtype)
        return [np.array(backend.to_numpy(bank), copy=True) for bank in resampler.resample_all(base, self.catalog)]

    def _require_setup(self):
        if self.catalog is None or self.W is None:
            raise RuntimeError("TIConv2d used before setup()")

    def _check_input(self, x: np.ndarray):
        if x.ndim != 4:
            raise ValueError(f"expected 4D input (N,C,H,W), got shape {x.shape}")
        if x.shape[1] != self.in_channels:
            raise ValueError(f"expected {self.in_channels} input channels, got {x.shape[1]}")

    # --- forward / backward ---
    def forward(self, x, *, return_context: bool = False):
        self._require_setup()
        x = np.asarray(x, dtype=self.dtype)
        self._check_input(x)
        cfg = self.config
        output_shape = self._output_shape(x.shape[0], x.shape[2], x.shape[3])
        backend = self.backend
        with self._lock:
            # private copies: the context must not see later in-place updates
            xb = backend.asarray(x.copy(), dtype=self.dtype)
            base = backend.asarray(self.W.copy(), dtype=self.dtype)
            bias = backend.asarray(self.b, dtype=self.dtype) if self.b is not None else None
            banks = KernelResampler(backend).resample_all(base, self.catalog, executor=self._variant_pool())
            selector = ResponseSelector(backend, cfg.stride, cfg.padding, cfg.groups)
            selection = selector.forward(xb, banks, bias, executor=self._variant_pool())
            context = ForwardContext(
                backend=backend,
                input=xb,
                argmax=selection.argmax,
                banks=banks,
                input_shape=tuple(x.shape),
                output_shape=output_shape,
            )
            self._context = context
        logger.debug(f"TIConv2d.forward [{backend.name}]: {tuple(x.shape)} -> {output_shape}")
        out = np.asarray(backend.to_numpy(selection.output), dtype=self.dtype)
        if return_context:
            return out, context
        return out

    def backward(self, grad_out, context: Optional[ForwardContext] = None):
        """Accumulate ``gW``/``gb`` and return the gradient w.r.t. the input."""
        self._require_setup()
        implicit = context is None
        if implicit:
            context = self._context
        if context is None:
            raise RuntimeError("TIConv2d.backward called before forward")
        grad_out = np.asarray(grad_out, dtype=self.dtype)
        if tuple(grad_out.shape) != context.output_shape:
            raise ValueError(f"expected gradient of shape {context.output_shape}, got {tuple(grad_out.shape)}")
        cfg = self.config
        backend = context.backend
        router = GradientRouter(backend, self.catalog, cfg.stride, cfg.padding, cfg.groups)
        with self._lock:
            g = backend.asarray(grad_out, dtype=self.dtype)
            routed = router.backward(g, context.argmax, context.banks, context.input, executor=self._variant_pool())
            self.gW += np.asarray(backend.to_numpy(routed.weight_grad), dtype=self.dtype)
            if self.b is not None:
                self.gb += np.asarray(backend.to_numpy(routed.bias_grad), dtype=self.dtype)
            if implicit:
                self._context = None
        return np.asarray(backend.to_numpy(routed.input_grad), dtype=self.dtype)

    __call__ = forward

    def _variant_pool(self) -> Optional[ThreadPoolExecutor]:
        # caller holds self._lock
        if self.config.max_workers <= 1:
            return None
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers, thread_name_prefix="ticonv-variant"
            )
        return self._executor

    def close(self):
        """Release the per-variant worker threads, if any.

        The pool is recreated on the next forward, so a closed layer stays usable.
        """
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        cfg = self.config
        return (
            f"TIConv2d(num_output={cfg.num_output}, kernel_size={cfg.kernel_size}, stride={cfg.stride}, "
            f"groups={cfg.groups}, variants={self.num_variants}, faculty={self._faculty.name})"
        )

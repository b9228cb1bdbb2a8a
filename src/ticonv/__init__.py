"""Transformation-invariant convolution with host and accelerator backends."""
from __future__ import annotations

from .backends import get_backend, register_backend
from .catalog import SamplingMap, TransformCatalog, build_sampling_map
from .config import (
    ConfigurationError,
    ConvolutionConfig,
    FillerSpec,
    Interpolation,
    TransformKind,
    TransformSpec,
)
from .faculty import Faculty, available_faculties, detect_faculty
from .layer import ForwardContext, TIConv2d, conv_output_size
from .resampler import KernelResampler
from .router import GradientRouter, RoutedGradients
from .selector import ResponseSelector, Selection

__all__ = [
    "ConfigurationError",
    "ConvolutionConfig",
    "Faculty",
    "FillerSpec",
    "ForwardContext",
    "GradientRouter",
    "Interpolation",
    "KernelResampler",
    "ResponseSelector",
    "RoutedGradients",
    "SamplingMap",
    "Selection",
    "TIConv2d",
    "TransformCatalog",
    "TransformKind",
    "TransformSpec",
    "available_faculties",
    "build_sampling_map",
    "conv_output_size",
    "detect_faculty",
    "get_backend",
    "register_backend",
]

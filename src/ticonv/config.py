"""
config.py
---------

Configuration surface for :class:`~ticonv.layer.TIConv2d`.

Transforms are a closed set of tagged values rather than a class hierarchy:
each :class:`TransformSpec` only carries data, and the single function that
turns it into geometry lives in :mod:`ticonv.catalog`.

Accepted transform forms::

    "identity"                      # also None or {}
    {"scale": 1.15}
    {"rotation": 45}
    {"scale": 2.0, "interp": "bilinear"}
    {"kind": "rotation", "rotation": 5, "interp": "nearest"}
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Sequence, Tuple


class ConfigurationError(ValueError):
    """Raised at setup when a layer cannot run with the given configuration."""


class TransformKind(str, Enum):
    IDENTITY = "identity"
    SCALE = "scale"
    ROTATION = "rotation"


class Interpolation(str, Enum):
    NEAREST = "nearest"
    BILINEAR = "bilinear"


def _parse_enum(enum_cls, value, what: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        known = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"unknown {what} {value!r} (expected one of: {known})") from exc


@dataclass(frozen=True)
class TransformSpec:
    """One geometric variant of the filter bank."""

    kind: TransformKind = TransformKind.IDENTITY
    scale: float = 1.0
    rotation: float = 0.0  # degrees
    interp: Interpolation = Interpolation.NEAREST

    def __post_init__(self):
        object.__setattr__(self, "kind", _parse_enum(TransformKind, self.kind, "transform kind"))
        object.__setattr__(self, "interp", _parse_enum(Interpolation, self.interp, "interpolation"))
        try:
            scale = float(self.scale)
            rotation = float(self.rotation)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"transform parameters must be numeric: {self!r}") from exc
        if not math.isfinite(scale) or scale <= 0.0:
            raise ConfigurationError(f"scale must be a positive finite number, got {self.scale!r}")
        if not math.isfinite(rotation):
            raise ConfigurationError(f"rotation must be finite, got {self.rotation!r}")
        object.__setattr__(self, "scale", scale)
        object.__setattr__(self, "rotation", rotation)

        if self.kind is TransformKind.IDENTITY and (scale != 1.0 or rotation != 0.0):
            raise ConfigurationError("identity transform cannot carry a scale or rotation")
        if self.kind is TransformKind.SCALE and rotation != 0.0:
            raise ConfigurationError("scale transform cannot carry a rotation")
        if self.kind is TransformKind.ROTATION and scale != 1.0:
            raise ConfigurationError("rotation transform cannot carry a scale")

    @property
    def is_identity(self) -> bool:
        return self.kind is TransformKind.IDENTITY

    @classmethod
    def identity(cls, interp: Interpolation | str = Interpolation.NEAREST) -> "TransformSpec":
        return cls(TransformKind.IDENTITY, interp=interp)

    @classmethod
    def scaled(cls, scale: float, interp: Interpolation | str = Interpolation.NEAREST) -> "TransformSpec":
        return cls(TransformKind.SCALE, scale=scale, interp=interp)

    @classmethod
    def rotated(cls, degrees: float, interp: Interpolation | str = Interpolation.NEAREST) -> "TransformSpec":
        return cls(TransformKind.ROTATION, rotation=degrees, interp=interp)

    @classmethod
    def from_value(cls, value: Any) -> "TransformSpec":
        """Parse one entry of the ``transformations`` list."""
        if isinstance(value, TransformSpec):
            return value
        if value is None:
            return cls.identity()
        if isinstance(value, (str, TransformKind)):
            kind = _parse_enum(TransformKind, value, "transform kind")
            if kind is not TransformKind.IDENTITY:
                raise ConfigurationError(f"{kind.value!r} transform needs a parameter, e.g. {{'{kind.value}': ...}}")
            return cls.identity()
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"cannot interpret transform {value!r}")

        unknown = set(value) - {"kind", "scale", "rotation", "interp"}
        if unknown:
            raise ConfigurationError(f"unknown transform keys: {sorted(unknown)}")
        interp = value.get("interp", Interpolation.NEAREST)
        if "kind" in value:
            kind = _parse_enum(TransformKind, value["kind"], "transform kind")
        elif "scale" in value and "rotation" in value:
            raise ConfigurationError("a transform is either a scale or a rotation, not both")
        elif "scale" in value:
            kind = TransformKind.SCALE
        elif "rotation" in value:
            kind = TransformKind.ROTATION
        else:
            kind = TransformKind.IDENTITY
        return cls(
            kind,
            scale=value.get("scale", 1.0),
            rotation=value.get("rotation", 0.0),
            interp=interp,
        )


FILLER_TYPES = ("constant", "gaussian", "uniform", "xavier", "he")


@dataclass(frozen=True)
class FillerSpec:
    """Initialiser description for a weight or bias blob."""

    type: str = "constant"
    value: float = 0.0
    mean: float = 0.0
    std: float = 1.0
    min: float = 0.0
    max: float = 1.0

    def __post_init__(self):
        kind = str(self.type).strip().lower()
        if kind not in FILLER_TYPES:
            raise ConfigurationError(f"unknown filler type {self.type!r} (expected one of: {', '.join(FILLER_TYPES)})")
        object.__setattr__(self, "type", kind)
        if kind == "gaussian" and self.std < 0:
            raise ConfigurationError("gaussian filler std must be non-negative")
        if kind == "uniform" and self.max < self.min:
            raise ConfigurationError("uniform filler max must be >= min")

    @classmethod
    def from_value(cls, value: Any) -> "FillerSpec":
        if isinstance(value, FillerSpec):
            return value
        if isinstance(value, str):
            return cls(type=value)
        if isinstance(value, Mapping):
            unknown = set(value) - set(cls.__dataclass_fields__)
            if unknown:
                raise ConfigurationError(f"unknown filler keys: {sorted(unknown)}")
            return cls(**value)
        raise ConfigurationError(f"cannot interpret filler {value!r}")


def _to_tuple2(x) -> Tuple[int, int]:
    """Normalize an int or 2-sequence to a 2-tuple of ints."""
    if isinstance(x, int):
        return (x, x)
    a, b = x
    return (int(a), int(b))


DTYPES = ("float32", "float64")


@dataclass
class ConvolutionConfig:
    """Everything :class:`~ticonv.layer.TIConv2d` needs besides the input shape.

    Parameters
    ----------
    num_output : int
        Number of output channels.
    kernel_size, stride, padding : int or (int, int)
    groups : int
        Must divide ``num_output`` (and the input channel count, checked at setup).
    bias_term : bool
    weight_filler, bias_filler : FillerSpec, str or mapping
    transformations : sequence
        Ordered transform list; argmax indices refer to this order.
    dtype : {"float32", "float64"}
    max_workers : int
        Thread count for per-variant work; 1 runs everything inline.
    seed : int, optional
        Seed for the random fillers.
    """

    num_output: int
    kernel_size: int | Tuple[int, int] = 3
    stride: int | Tuple[int, int] = 1
    padding: int | Tuple[int, int] = 0
    groups: int = 1
    bias_term: bool = True
    weight_filler: FillerSpec = field(default_factory=lambda: FillerSpec("gaussian", std=0.01))
    bias_filler: FillerSpec = field(default_factory=FillerSpec)
    transformations: Sequence[Any] = ("identity",)
    dtype: str = "float32"
    max_workers: int = 1
    seed: Optional[int] = None

    def __post_init__(self):
        try:
            self.kernel_size = _to_tuple2(self.kernel_size)
            self.stride = _to_tuple2(self.stride)
            self.padding = _to_tuple2(self.padding)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"kernel_size/stride/padding must be ints or pairs: {exc}") from exc
        if int(self.num_output) <= 0:
            raise ConfigurationError(f"num_output must be positive, got {self.num_output}")
        if min(self.kernel_size) <= 0:
            raise ConfigurationError(f"kernel_size must be positive, got {self.kernel_size}")
        if min(self.stride) <= 0:
            raise ConfigurationError(f"stride must be positive, got {self.stride}")
        if min(self.padding) < 0:
            raise ConfigurationError(f"padding must be non-negative, got {self.padding}")
        if int(self.groups) <= 0:
            raise ConfigurationError(f"groups must be positive, got {self.groups}")
        if self.num_output % self.groups != 0:
            raise ConfigurationError(
                f"groups ({self.groups}) must divide num_output ({self.num_output})"
            )
        if self.dtype not in DTYPES:
            raise ConfigurationError(f"dtype must be one of {DTYPES}, got {self.dtype!r}")
        if int(self.max_workers) < 1:
            raise ConfigurationError(f"max_workers must be >= 1, got {self.max_workers}")
        self.weight_filler = FillerSpec.from_value(self.weight_filler)
        self.bias_filler = FillerSpec.from_value(self.bias_filler)
        transforms = list(self.transformations) or ["identity"]
        self.transformations = tuple(TransformSpec.from_value(t) for t in transforms)

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "ConvolutionConfig":
        known = set(cls.__dataclass_fields__)
        unknown = set(params) - known
        if unknown:
            raise ConfigurationError(f"unknown convolution parameters: {sorted(unknown)}")
        if "num_output" not in params:
            raise ConfigurationError("num_output is required")
        return cls(**dict(params))

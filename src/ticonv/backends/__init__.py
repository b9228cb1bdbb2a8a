"""Compute backends.

Each backend registers itself under a :class:`~ticonv.faculty.Faculty` when
its module is imported. :func:`get_backend` imports the module lazily so the
torch path costs nothing unless it is requested.
"""
from __future__ import annotations

import importlib
from typing import Dict, Optional

from ..faculty import Faculty, detect_faculty, parse_faculty
from .base import ComputeBackend

BACKEND_REGISTRY: Dict[Faculty, type] = {}

_BACKEND_MODULES = {
    Faculty.NUMPY: ".numpy_backend",
    Faculty.TORCH: ".torch_backend",
}

_INSTANCES: Dict[Faculty, ComputeBackend] = {}


def register_backend(faculty: Faculty, backend_cls: type) -> None:
    """
    Register a backend class for a given faculty.
    Backends should call this after their class definition.
    """
    BACKEND_REGISTRY[faculty] = backend_cls


def get_backend(faculty: Optional[Faculty | str | int] = None) -> ComputeBackend:
    """Return the shared backend instance for ``faculty`` (default: detected)."""
    faculty = detect_faculty() if faculty is None else parse_faculty(faculty)
    backend = _INSTANCES.get(faculty)
    if backend is not None:
        return backend
    if faculty not in BACKEND_REGISTRY:
        importlib.import_module(_BACKEND_MODULES[faculty], __name__)
    if faculty not in BACKEND_REGISTRY:
        raise RuntimeError(f"no backend available for faculty {faculty.name}")
    backend = BACKEND_REGISTRY[faculty]()
    _INSTANCES[faculty] = backend
    return backend


__all__ = ["BACKEND_REGISTRY", "ComputeBackend", "get_backend", "register_backend"]

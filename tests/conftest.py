import os
import sys
import time
from pathlib import Path

import numpy as np
import pytest

# Ensure src is importable without installing the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from ticonv.faculty import Faculty, available_faculties  # noqa: E402


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow",
        action="store_true",
        help="Run exhaustive gradient checks on full-size layers",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "slow: exhaustive checks that take several seconds",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-slow"):
        return
    skip = pytest.mark.skip(reason="need --run-slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip)


_RUN_LOG = "pytest_run_times.log"


def pytest_sessionstart(session):
    session._start_time = time.time()


def pytest_sessionfinish(session, exitstatus):
    duration = time.time() - session._start_time
    log_file = Path(session.config.rootpath) / _RUN_LOG
    history = int(os.environ.get("PYTEST_RUN_TIME_HISTORY", "50"))
    line = f"{time.strftime('%Y-%m-%d %H:%M:%S')} {duration:.2f}"

    if log_file.exists():
        lines = log_file.read_text().splitlines()
    else:
        lines = []

    lines.append(line)
    lines = lines[-history:]
    log_file.write_text("\n".join(lines) + "\n")

    reporter = session.config.pluginmanager.get_plugin("terminalreporter")
    if reporter and lines:
        reporter.write_line("Recent pytest run times:")
        for entry in lines[-5:]:
            reporter.write_line(f"  {entry}")


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

FACULTIES = [
    pytest.param(
        f,
        id=f.name.lower(),
        marks=pytest.mark.skipif(f not in available_faculties(), reason="torch not installed"),
    )
    for f in (Faculty.NUMPY, Faculty.TORCH)
]


@pytest.fixture(params=FACULTIES)
def faculty(request):
    """Run a test once per compute path."""
    return request.param


@pytest.fixture
def torch_faculty():
    pytest.importorskip("torch")
    return Faculty.TORCH


# ---------------------------------------------------------------------------
# Finite differences
# ---------------------------------------------------------------------------


def numerical_gradient(f, array, eps=1e-6):
    """Central-difference gradient of scalar ``f()`` w.r.t. ``array`` (mutated in place)."""
    grad = np.zeros_like(array)
    for idx in np.ndindex(array.shape):
        orig = array[idx]
        array[idx] = orig + eps
        f_pos = f()
        array[idx] = orig - eps
        f_neg = f()
        array[idx] = orig
        grad[idx] = (f_pos - f_neg) / (2 * eps)
    return grad


@pytest.fixture
def numgrad():
    return numerical_gradient

"""Pytest configuration: use a temporary PYGEN_ROOT so tests don't touch real data."""

import os
import shutil
import tempfile

import pytest

# Set PYGEN_ROOT before any test module imports pygen (so pygen's module-level constants use it)
_PYGEN_TEST_ROOT = tempfile.mkdtemp(prefix="pygen_test_")
os.environ["PYGEN_ROOT"] = _PYGEN_TEST_ROOT


@pytest.fixture(scope="session", autouse=True)
def _cleanup_pygen_root():
    """Remove test PYGEN_ROOT and env var after all tests."""
    yield
    os.environ.pop("PYGEN_ROOT", None)
    shutil.rmtree(_PYGEN_TEST_ROOT, ignore_errors=True)

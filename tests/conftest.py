"""Pytest configuration and shared fixtures for logstore test runs."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def pytest_sessionstart() -> None:
    """Add src directory to sys.path for test imports."""
    project_root = Path(__file__).resolve().parent.parent
    src_path = project_root / "src"
    if str(src_path) not in sys.path:
        sys.path.insert(0, str(src_path))


@pytest.fixture
def store(tmp_path: Path):
    """Return an empty datastore rooted in the test's temporary directory."""
    from core.config import StoreConfig
    from store.datastore import Datastore

    return Datastore.create(StoreConfig(store_root=tmp_path / "store"))

"""Shared pytest configuration and fixtures for the test suite.

This module centralizes:
- Path setup so ``handlegraph`` and ``tests.helpers`` import from a checkout
- Pytest markers for test categorization (unit, integration)
- File-backed store fixtures and a fake upstream client
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest


# ==============================================================================
# Path Setup
# ==============================================================================

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from handlegraph.data.blob_store import LocalBlobStore  # noqa: E402
from handlegraph.data.job_store import JobStore, create_store_engine  # noqa: E402
from tests.helpers.fake_social_graph import FakeSocialGraphClient  # noqa: E402


# ==============================================================================
# Pytest Configuration
# ==============================================================================

def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line(
        "markers",
        "unit: Fast tests with no I/O (mocked dependencies)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests hitting SQLite, file system, or the Flask app",
    )


# ==============================================================================
# Store Fixtures
# ==============================================================================

@pytest.fixture
def job_store(tmp_path: Path) -> JobStore:
    """File-backed store so separate connections see each other's commits."""
    return JobStore(create_store_engine(tmp_path / "crawl.db"))


@pytest.fixture
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def fake_client() -> FakeSocialGraphClient:
    return FakeSocialGraphClient()

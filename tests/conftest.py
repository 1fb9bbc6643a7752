"""Pytest configuration and fixtures."""

import os
import shutil
import tempfile

import pytest

from pulse_tracker.store import ActivityStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    temp_path = tempfile.mkdtemp()
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def db_path(temp_dir):
    return os.path.join(temp_dir, "activity.sqlite3")


@pytest.fixture
def store(db_path):
    """File-backed store, closed after the test."""
    activity_store = ActivityStore(db_path)
    yield activity_store
    activity_store.close()


@pytest.fixture
def terminal_activities():
    """Terminal sessions all rooted in the same project folder."""
    return [
        {
            "app_name": "Terminal",
            "bundle_id": "com.apple.Terminal",
            "window_title": f"zsh {index}",
            "extra_info": "~/projects/acme-web",
        }
        for index in range(5)
    ]


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "unit: mark test as unit test")

"""
Pytest configuration and fixtures.

This file provides pytest-specific configuration and fixtures.
For standard test utilities, see tests/__init__.py
"""

import pytest

from tests import check_db_available, get_test_db_url
from tests.mocks.notification_mocks import SleepRecorder, build_sinks


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "db: marks tests as requiring database (deselect with '-m \"not db\"')"
    )


@pytest.fixture(scope="session")
def test_db_url():
    """
    URL of an external PostgreSQL for db-marked tests.

    Set TEST_DATABASE_URL to run them; otherwise they are skipped.
    """
    if not check_db_available():
        pytest.skip("Test database not available (set TEST_DATABASE_URL)")
    return get_test_db_url()


@pytest.fixture
def sinks():
    """Scripted sinks for every channel, all succeeding."""
    return build_sinks()


@pytest.fixture
def sleeper():
    return SleepRecorder()

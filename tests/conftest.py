"""
Pytest configuration and fixtures.

This file provides pytest-specific configuration and fixtures.
For standard test utilities, see tests/__init__.py
"""

import logging

import pytest


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "redis: marks tests as requiring Redis (deselect with '-m \"not redis\"')"
    )


@pytest.fixture(autouse=True)
def quiet_provider_logs():
    """Keep httpx request logging out of test output."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    yield

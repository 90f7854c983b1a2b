#!/usr/bin/env python3
"""
Test suite configuration and utilities.

All tests can be run with standard Python tools:

    # Run all tests (integration tests skip without Redis)
    python -m pytest tests/ -v

    # Run only unit tests
    python -m pytest tests/unit -v

    # Run Redis integration tests
    REDIS_URL=redis://localhost:6379/1 python -m pytest tests/integration -v -m redis

Unit tests run against MemoryStore and in-memory SQLite, so they need
neither Redis nor a database server.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

PROJECT_ROOT = Path(__file__).resolve().parent.parent
TEMPLATES_DIR = PROJECT_ROOT / "templates"

TEST_REDIS_URL: Optional[str] = os.environ.get("REDIS_URL")


class FakeClock:
    """Controllable time source for components that accept a ``clock``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.start = start
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_event(**overrides: Any) -> Dict[str, Any]:
    """Raw event mapping as a producer would submit it."""
    event: Dict[str, Any] = {
        'id': 'evt-1',
        'type': 'TRANSACTION_CONFIRMED',
        'severity': 'info',
        'userId': 'user-1',
        'data': {'txHash': '0xabc'},
        'metadata': {'source': 'tests'},
    }
    event.update(overrides)
    return event

"""Pytest configuration for django-pgparty tests."""

import sys
from pathlib import Path

from tests.fixtures import (
    default_cache,
    fake_connection,
    fake_pool,
    make_manager,
    manager,
    partition_config,
)

# Re-export fixtures so pytest can discover them
__all__ = [
    "default_cache",
    "fake_connection",
    "fake_pool",
    "make_manager",
    "manager",
    "partition_config",
]


def pytest_configure(config):
    """Add tests directory to Python path."""
    sys.path.insert(0, str(Path(__file__).absolute().parent))

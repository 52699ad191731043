"""Test fixtures for django-pgparty."""

from tests.fixtures.fakes import FakeConnection, FakePool
from tests.fixtures.partitions import (
    default_cache,
    fake_connection,
    fake_pool,
    make_manager,
    manager,
    partition_config,
)

__all__ = [
    "FakeConnection",
    "FakePool",
    "default_cache",
    "fake_connection",
    "fake_pool",
    "make_manager",
    "manager",
    "partition_config",
]

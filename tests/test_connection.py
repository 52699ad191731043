"""Tests for the Django connection adapters."""

import pytest
from django.core.exceptions import ImproperlyConfigured
from django.db import connections

from django_pgparty.connection import ConnectionPool, DatabaseConnection


class TestDatabaseConnection:
    def test_requires_postgresql(self):
        with pytest.raises(ImproperlyConfigured, match="requires PostgreSQL"):
            DatabaseConnection.for_alias("default")


class TestConnectionPool:
    def test_size_without_psycopg_pool(self):
        assert ConnectionPool("default", default_size=7).size == 7

    def test_size_from_psycopg_pool_options(self, monkeypatch):
        options = {"pool": {"min_size": 2, "max_size": 8}}
        monkeypatch.setitem(connections.settings["default"], "OPTIONS", options)
        assert ConnectionPool("default").size == 8

    def test_size_with_default_psycopg_pool(self, monkeypatch):
        monkeypatch.setitem(connections.settings["default"], "OPTIONS", {"pool": True})
        assert ConnectionPool("default").size == 4

    def test_with_connection_closes_afterwards(self, monkeypatch):
        closed = []
        connection = connections["default"]
        monkeypatch.setattr(connection, "vendor", "postgresql")
        monkeypatch.setattr(connection, "close", lambda: closed.append(True))

        result = ConnectionPool("default").with_connection(lambda conn: conn.alias)

        assert result == "default"
        assert closed == [True]

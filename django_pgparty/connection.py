"""Adapters over Django's database connections.

:class:`DatabaseConnection` narrows a Django ``DatabaseWrapper`` to the calls the
partition manager needs (execute, single-column selects, quoting, catalog
checks) and logs every statement it runs. :class:`ConnectionPool` hands worker
threads their own connection for the duration of a callback.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from django.core.exceptions import ImproperlyConfigured
from django.db import connections, transaction

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from contextlib import AbstractContextManager

    from django.db.backends.base.base import BaseDatabaseWrapper
    from django.db.models import Field

logger = logging.getLogger(__name__)

# psycopg_pool.ConnectionPool uses min_size=4 and max_size=min_size by default.
_PSYCOPG_POOL_DEFAULT_SIZE = 4


class DatabaseConnection:
    """A PostgreSQL Django connection seen through the partition manager's eyes."""

    def __init__(self, connection: BaseDatabaseWrapper) -> None:
        if connection.vendor != "postgresql":
            msg = f"django-pgparty requires PostgreSQL, database {connection.alias!r} uses {connection.vendor}"
            raise ImproperlyConfigured(msg)
        self._connection = connection

    @classmethod
    def for_alias(cls, alias: str = "default") -> DatabaseConnection:
        return cls(connections[alias])

    @property
    def alias(self) -> str:
        return self._connection.alias

    @property
    def server_version(self) -> int:
        """Major version of the server, e.g. ``17``."""
        return self._connection.pg_version // 10000  # type: ignore[attr-defined]

    @property
    def in_transaction(self) -> bool:
        return self._connection.in_atomic_block

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> None:
        logger.debug("Executing on %s: %s", self.alias, sql)
        with self._connection.cursor() as cursor:
            cursor.execute(sql, params)

    def select_values(self, sql: str, params: Sequence[Any] | None = None) -> list[Any]:
        """Run a query and return the first column of every row."""
        with self._connection.cursor() as cursor:
            cursor.execute(sql, params)
            return [row[0] for row in cursor.fetchall()]

    def quote(self, value: Any) -> str:
        """Render ``value`` as a SQL literal using the driver's adaptation rules."""
        return self._connection.ops.compose_sql("%s", [value])  # type: ignore[attr-defined]

    def quote_name(self, name: str) -> str:
        return self._connection.ops.quote_name(name)

    def column_type(self, field: Field) -> str:
        db_type = field.db_type(self._connection)
        if db_type is None:
            msg = f"{field.__class__.__name__} has no column type on PostgreSQL"
            raise ValueError(msg)
        return db_type

    def table_exists(self, table_name: str) -> bool:
        with self._connection.cursor() as cursor:
            return table_name in self._connection.introspection.table_names(cursor)

    def supports_pgcrypto_uuid(self) -> bool:
        """Whether ``gen_random_uuid()`` is callable (built in since 13, else via pgcrypto)."""
        if self.server_version >= 13:
            return True
        return bool(self.select_values("SELECT 1 FROM pg_extension WHERE extname = 'pgcrypto'"))

    def atomic(self) -> AbstractContextManager[Any]:
        return transaction.atomic(using=self.alias)


class ConnectionPool:
    """Borrow per-thread Django connections for worker threads.

    Django keeps one connection per thread and alias, so borrowing means using
    the calling thread's connection and closing it once the callback returns.
    ``size`` reports the psycopg pool size when ``OPTIONS["pool"]`` is set,
    otherwise ``default_size``.
    """

    def __init__(self, alias: str = "default", default_size: int = 5) -> None:
        self.alias = alias
        self.default_size = default_size

    @property
    def size(self) -> int:
        options = connections.settings[self.alias].get("OPTIONS", {})
        pool = options.get("pool")
        if isinstance(pool, dict):
            return int(pool.get("max_size") or pool.get("min_size") or _PSYCOPG_POOL_DEFAULT_SIZE)
        if pool:
            return _PSYCOPG_POOL_DEFAULT_SIZE
        return self.default_size

    def with_connection(self, callback: Callable[[DatabaseConnection], Any]) -> Any:
        connection = connections[self.alias]
        try:
            return callback(DatabaseConnection(connection))
        finally:
            connection.close()

"""In-memory stand-ins for a PostgreSQL connection and connection pool.

``FakeConnection`` records every statement, answers the catalog queries of
``django_pgparty.introspection`` from a small model of the partition tree, and
applies the effect of the DDL it sees (new tables, attach/detach, primary keys)
to that model.
"""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from django.db import DatabaseError

from django_pgparty import introspection

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

_CREATE_TABLE_RE = re.compile(r'^CREATE TABLE "([^"]+)"')
_LIKE_RE = re.compile(r'\(LIKE "([^"]+)" INCLUDING ALL( EXCLUDING INDEXES)?\)')
_ATTACH_RE = re.compile(r'^ALTER TABLE "([^"]+)" ATTACH PARTITION "([^"]+)"')
_DETACH_RE = re.compile(r'^ALTER TABLE "([^"]+)" DETACH PARTITION "([^"]+)"')
_ADD_PK_RE = re.compile(r'^ALTER TABLE "([^"]+)" ADD PRIMARY KEY')

_COLUMN_TYPES = {
    "BigIntegerField": "bigint",
    "BooleanField": "boolean",
    "DateField": "date",
    "DateTimeField": "timestamp with time zone",
    "IntegerField": "integer",
    "TextField": "text",
    "UUIDField": "uuid",
}


class FakeConnection:
    """Implements ``ConnectionProtocol`` without a database."""

    def __init__(
        self,
        server_version: int = 17,
        *,
        alias: str = "default",
        tables: Iterable[str] = (),
        partitioned: Iterable[str] = (),
        children: dict[str, list[str]] | None = None,
        primary_keys: Iterable[str] = (),
        pgcrypto: bool = False,
        in_transaction: bool = False,
    ) -> None:
        self._server_version = server_version
        self._alias = alias
        self._in_transaction = in_transaction
        self.tables = set(tables)
        self.partitioned = set(partitioned)
        self.children = {parent: list(kids) for parent, kids in (children or {}).items()}
        for parent, kids in self.children.items():
            self.tables.add(parent)
            self.tables.update(kids)
        self.primary_keys = set(primary_keys)
        self.invalid_indexes: set[str] = set()
        self.pgcrypto = pgcrypto
        self.statements: list[str] = []
        self.queries: list[tuple[str, Any]] = []
        self.fail_on: Callable[[str], bool] | None = None
        self.fail_queries = False
        self._lock = threading.Lock()

    @property
    def alias(self) -> str:
        return self._alias

    @property
    def server_version(self) -> int:
        return self._server_version

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    # -- execution -----------------------------------------------------------

    def execute(self, sql: str, params: Any = None) -> None:
        with self._lock:
            self.statements.append(sql)
        if self.fail_on is not None and self.fail_on(sql):
            msg = f"simulated failure: {sql}"
            raise DatabaseError(msg)
        self._apply(sql)

    def _apply(self, sql: str) -> None:
        if match := _CREATE_TABLE_RE.match(sql):
            table = match.group(1)
            self.tables.add(table)
            if " PARTITION BY " in sql:
                self.partitioned.add(table)
            if "PRIMARY KEY (" in sql:
                self.primary_keys.add(table)
            like = _LIKE_RE.search(sql)
            if like and like.group(2) is None and like.group(1) in self.primary_keys:
                self.primary_keys.add(table)
        elif match := _ATTACH_RE.match(sql):
            self.children.setdefault(match.group(1), []).append(match.group(2))
        elif match := _DETACH_RE.match(sql):
            self.children.get(match.group(1), []).remove(match.group(2))
        elif match := _ADD_PK_RE.match(sql):
            self.primary_keys.add(match.group(1))

    def select_values(self, sql: str, params: Any = None) -> list[Any]:
        with self._lock:
            self.queries.append((sql, params))
        if self.fail_queries:
            msg = "simulated catalog failure"
            raise DatabaseError(msg)
        if sql is introspection._CHILDREN_SQL:
            return list(self.children.get(params[0], []))
        if sql is introspection._PARENT_SQL:
            return [parent for parent, kids in self.children.items() if params[0] in kids]
        if sql is introspection._RELKIND_SQL:
            table = params[0]
            if table in self.partitioned:
                return ["p"]
            return ["r"] if table in self.tables else []
        if sql is introspection._PRIMARY_KEY_SQL:
            return [1] if params[0] in self.primary_keys else []
        if sql is introspection._INVALID_INDEXES_SQL:
            return [name for name in params[0] if name in self.invalid_indexes]
        if sql is introspection._ALL_PARTITIONS_SQL:
            return sorted(
                f"public.{child}"
                for parent, kids in self.children.items()
                if parent in self.partitioned
                for child in kids
            )
        if "pg_extension" in sql:
            return [1] if self.pgcrypto else []
        msg = f"unexpected query: {sql}"
        raise AssertionError(msg)

    def catalog_queries(self, sql: str) -> int:
        return sum(1 for query, _ in self.queries if query is sql)

    # -- quoting -------------------------------------------------------------

    def quote(self, value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        return "'" + str(value).replace("'", "''") + "'"

    def quote_name(self, name: str) -> str:
        return f'"{name}"'

    def column_type(self, field: Any) -> str:
        return _COLUMN_TYPES[type(field).__name__]

    # -- catalog helpers -----------------------------------------------------

    def table_exists(self, table_name: str) -> bool:
        return table_name in self.tables

    def supports_pgcrypto_uuid(self) -> bool:
        return self._server_version >= 13 or self.pgcrypto

    @contextmanager
    def atomic(self) -> Iterator[None]:
        previous = self._in_transaction
        self._in_transaction = True
        try:
            yield
        finally:
            self._in_transaction = previous


class FakePool:
    """Implements ``PoolProtocol``, lending the same fake connection to every worker."""

    def __init__(self, connection: FakeConnection, size: int = 5) -> None:
        self.connection = connection
        self._size = size
        self.borrowed = 0
        self.threads: set[str] = set()
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return self._size

    def with_connection(self, callback: Callable[[FakeConnection], Any]) -> Any:
        with self._lock:
            self.borrowed += 1
            self.threads.add(threading.current_thread().name)
        return callback(self.connection)

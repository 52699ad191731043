"""SQL construction for partitioned tables, partitions and partition indexes.

Everything here is string building: :class:`PartitionSQL` is created with the
connection's identifier and literal quoting functions and has no other
dependency on the database. Identifiers and values are always quoted, with one
exception: a partition key given as a callable is inserted verbatim, because
there is no reliable way to sanitize an arbitrary SQL expression. Callers that
pass expression keys own that input.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from django_pgparty.types import HashBounds, ListValues, PartitionType, RangeBounds, iter_columns

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from django.db.models import Field

    from django_pgparty.types import Constraint, PartitionKey

# PostgreSQL truncates identifiers longer than this (NAMEDATALEN - 1).
MAX_IDENTIFIER_LENGTH = 63

# Length of the md5 prefix used for derived table and index names.
HASH_SUFFIX_LENGTH = 7

_SCALAR_TYPES = (str, bytes, bytearray)


def short_hash(value: str) -> str:
    """First seven hex digits of the md5 of ``value``."""
    return hashlib.md5(value.encode(), usedforsecurity=False).hexdigest()[:HASH_SUFFIX_LENGTH]


def template_table_name(table_name: str) -> str:
    return f"{table_name}_template"


def hashed_table_name(table_name: str, constraint_clause: str | None) -> str:
    """Derive a child table name from its parent and constraint clause.

    Identical clauses always map to the same name. The default partition has
    no clause and is named ``{parent}_default``.
    """
    if constraint_clause is None:
        return f"{table_name}_default"
    return f"{table_name}_{short_hash(constraint_clause)}"


def partition_index_name(index_name: str, table_name: str) -> str:
    """Name of the copy of ``index_name`` created on partition ``table_name``."""
    return f"{index_name}_{short_hash(table_name)}"


@dataclass(slots=True)
class ColumnDefinition:
    name: str
    type: str
    null: bool = True
    default: str | None = None


@dataclass
class TableDefinition:
    """Columns and table constraints collected for ``CREATE TABLE``.

    Passed to the ``columns`` callback of the ``create_*_partition`` verbs::

        def columns(t):
            t.column("created_at", models.DateTimeField())
            t.column("region", "text", null=False)
    """

    table_name: str
    column_type: Callable[[Field], str]
    columns: list[ColumnDefinition] = field(default_factory=list)
    primary_key_columns: tuple[str, ...] = ()

    def column(
        self,
        name: str,
        type: str | Field,  # noqa: A002
        *,
        null: bool | None = None,
        default: str | None = None,
    ) -> None:
        """Add a column from a raw SQL type or a Django field instance.

        ``default`` is a SQL expression and is not quoted.
        """
        if isinstance(type, str):
            sql_type = type
            nullable = True if null is None else null
        else:
            sql_type = self.column_type(type)
            nullable = type.null if null is None else null
        self.columns.append(ColumnDefinition(name, sql_type, nullable, default))

    def primary_key(self, *columns: str) -> None:
        self.primary_key_columns = columns

    def has_column(self, name: str) -> bool:
        return any(column.name == name for column in self.columns)


class PartitionSQL:
    """Builds DDL statements with the quoting rules of one connection."""

    def __init__(self, quote_name: Callable[[str], str], quote_value: Callable[[Any], str]) -> None:
        self.quote_name = quote_name
        self._quote_value = quote_value

    # =========================================================================
    # Quoting
    # =========================================================================

    def quote(self, value: Any) -> str:
        # Booleans use the 't'/'f' literals PostgreSQL stores in the catalog;
        # true/false keywords are rejected in some partition bound contexts.
        if value is True:
            return "'t'"
        if value is False:
            return "'f'"
        return self._quote_value(value)

    def quote_collection(self, values: Any) -> str:
        """Comma-separated literals. Sets are rendered sorted so derived names stay stable."""
        if isinstance(values, _SCALAR_TYPES) or not isinstance(values, Iterable):
            values = [values]
        elif isinstance(values, (set, frozenset)):
            values = sorted(values, key=repr)
        return ",".join(self.quote(value) for value in values)

    def quote_columns(self, columns: str | Sequence[str]) -> str:
        return ", ".join(self.quote_name(column) for column in iter_columns(columns))

    def partition_key_sql(self, key: PartitionKey) -> str:
        if callable(key):
            return str(key())
        return ",".join(self.quote_name(column) for column in iter_columns(key))

    # =========================================================================
    # Clauses
    # =========================================================================

    def partition_by_clause(self, partition_type: PartitionType, key: PartitionKey) -> str:
        return f"PARTITION BY {PartitionType(partition_type).upper()} ({self.partition_key_sql(key)})"

    def range_constraint_clause(self, start_range: Any, end_range: Any) -> str:
        return f"FROM ({self.quote_collection(start_range)}) TO ({self.quote_collection(end_range)})"

    def list_constraint_clause(self, values: Any) -> str:
        return f"IN ({self.quote_collection(values)})"

    def hash_constraint_clause(self, modulus: int, remainder: int) -> str:
        return f"WITH (MODULUS {int(modulus)}, REMAINDER {int(remainder)})"

    def constraint_clause(self, constraint: Constraint | None) -> str | None:
        """Render the ``FOR VALUES`` body of a constraint, ``None`` for default partitions."""
        match constraint:
            case None:
                return None
            case RangeBounds(start, end):
                return self.range_constraint_clause(start, end)
            case ListValues(values):
                return self.list_constraint_clause(values)
            case HashBounds(modulus, remainder):
                return self.hash_constraint_clause(modulus, remainder)
        msg = f"Unknown partition constraint: {constraint!r}"
        raise TypeError(msg)

    # =========================================================================
    # Tables
    # =========================================================================

    def column_sql(self, column: ColumnDefinition) -> str:
        sql = f"{self.quote_name(column.name)} {column.type}"
        if not column.null:
            sql += " NOT NULL"
        if column.default is not None:
            sql += f" DEFAULT {column.default}"
        return sql

    def create_table(self, definition: TableDefinition, partition_clause: str | None = None) -> str:
        parts = [self.column_sql(column) for column in definition.columns]
        if definition.primary_key_columns:
            parts.append(f"PRIMARY KEY ({self.quote_columns(definition.primary_key_columns)})")
        sql = f"CREATE TABLE {self.quote_name(definition.table_name)} ({', '.join(parts)})"
        if partition_clause:
            sql += f" {partition_clause}"
        return sql

    def create_table_like(
        self,
        table_name: str,
        new_table_name: str,
        *,
        excluding_indexes: bool = False,
        partition_clause: str | None = None,
    ) -> str:
        like_option = "INCLUDING ALL EXCLUDING INDEXES" if excluding_indexes else "INCLUDING ALL"
        sql = f"CREATE TABLE {self.quote_name(new_table_name)} (LIKE {self.quote_name(table_name)} {like_option})"
        if partition_clause:
            sql += f" {partition_clause}"
        return sql

    def add_primary_key(self, table_name: str, columns: str | Sequence[str]) -> str:
        return f"ALTER TABLE {self.quote_name(table_name)} ADD PRIMARY KEY ({self.quote_columns(columns)})"

    # =========================================================================
    # Partitions
    # =========================================================================

    def attach_partition(self, parent_table_name: str, child_table_name: str, constraint_clause: str) -> str:
        return (
            f"ALTER TABLE {self.quote_name(parent_table_name)} "
            f"ATTACH PARTITION {self.quote_name(child_table_name)} FOR VALUES {constraint_clause}"
        )

    def attach_default_partition(self, parent_table_name: str, child_table_name: str) -> str:
        return (
            f"ALTER TABLE {self.quote_name(parent_table_name)} "
            f"ATTACH PARTITION {self.quote_name(child_table_name)} DEFAULT"
        )

    def detach_partition(self, parent_table_name: str, child_table_name: str) -> str:
        return (
            f"ALTER TABLE {self.quote_name(parent_table_name)} "
            f"DETACH PARTITION {self.quote_name(child_table_name)}"
        )

    # =========================================================================
    # Indexes
    # =========================================================================

    def create_index(
        self,
        index_name: str,
        table_name: str,
        columns: str | Sequence[str],
        *,
        unique: bool = False,
        using: str | None = None,
        where: str | None = None,
        concurrently: bool = False,
        only: bool = False,
    ) -> str:
        """``CREATE INDEX``; ``only`` registers it on a partitioned table without recursing."""
        sql = "CREATE UNIQUE INDEX" if unique else "CREATE INDEX"
        if concurrently:
            sql += " CONCURRENTLY"
        sql += f" {self.quote_name(index_name)} ON "
        if only:
            sql += "ONLY "
        sql += self.quote_name(table_name)
        if using:
            sql += f" USING {using}"
        sql += f" ({self.quote_columns(columns)})"
        if where:
            sql += f" WHERE {where}"
        return sql

    def attach_index(self, parent_index_name: str, child_index_name: str) -> str:
        return f"ALTER INDEX {self.quote_name(parent_index_name)} ATTACH PARTITION {self.quote_name(child_index_name)}"

    def drop_index(self, index_name: str) -> str:
        return f"DROP INDEX IF EXISTS {self.quote_name(index_name)}"

"""Type definitions for django-pgparty.

Enums, the structured partition specifications consumed by the manager, and
the protocols describing the collaborators the manager needs (a database
connection and a connection pool) and the verb set it exposes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from django_pgparty.exceptions import UnsupportedPartitionTypeError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence
    from contextlib import AbstractContextManager

    from django.db.models import Field

# A partition key is one column, several columns, or a callable returning a raw
# SQL expression (for example ``lambda: "created_at::date"``).
type PartitionKey = str | Sequence[str] | Callable[[], str]

# ``False`` means "no primary key"; a sequence is a composite key.
type PrimaryKey = str | Sequence[str] | bool | None


class PartitionType(StrEnum):
    """PostgreSQL declarative partitioning strategies."""

    RANGE = "range"
    LIST = "list"
    HASH = "hash"

    @classmethod
    def coerce(cls, value: str | PartitionType) -> PartitionType:
        """Return the member for ``value`` (case-insensitive) or raise."""
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnsupportedPartitionTypeError(value) from None


class IdType(StrEnum):
    """Storage types for the generated primary key column."""

    BIGSERIAL = "bigserial"
    SERIAL = "serial"
    UUID = "uuid"


@dataclass(frozen=True, slots=True)
class RangeBounds:
    """``FOR VALUES FROM (start) TO (end)``; multi-column keys take sequences."""

    start: Any
    end: Any


@dataclass(frozen=True, slots=True)
class ListValues:
    """``FOR VALUES IN (values)``."""

    values: Sequence[Any]


@dataclass(frozen=True, slots=True)
class HashBounds:
    """``FOR VALUES WITH (MODULUS modulus, REMAINDER remainder)``."""

    modulus: int
    remainder: int


type Constraint = RangeBounds | ListValues | HashBounds


@dataclass(frozen=True, slots=True)
class PartitionSpec:
    """A table to be created as a partitioned parent."""

    table_name: str
    partition_type: PartitionType
    partition_key: PartitionKey
    primary_key: PrimaryKey = None
    id_type: IdType | str | None = IdType.BIGSERIAL
    template: bool = True
    create_with_primary_key: bool = False


@dataclass(frozen=True, slots=True)
class PartitionOfSpec:
    """A child partition to be created under an existing parent.

    ``constraint`` is ``None`` for the default partition. Setting
    ``partition_type`` makes the child a partitioned table in its own right.
    """

    parent_table_name: str
    constraint: Constraint | None
    name: str | None = None
    primary_key: PrimaryKey = None
    index: bool = True
    partition_type: PartitionType | None = None
    partition_key: PartitionKey | None = None

    @property
    def is_default(self) -> bool:
        return self.constraint is None


@runtime_checkable
class ConnectionProtocol(Protocol):
    """The slice of a database connection the partition manager relies on."""

    @property
    def alias(self) -> str: ...

    @property
    def server_version(self) -> int: ...

    @property
    def in_transaction(self) -> bool: ...

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> None: ...

    def select_values(self, sql: str, params: Sequence[Any] | None = None) -> list[Any]: ...

    def quote(self, value: Any) -> str: ...

    def quote_name(self, name: str) -> str: ...

    def column_type(self, field: Field) -> str: ...

    def table_exists(self, table_name: str) -> bool: ...

    def supports_pgcrypto_uuid(self) -> bool: ...

    def atomic(self) -> AbstractContextManager[Any]: ...


@runtime_checkable
class PoolProtocol(Protocol):
    """A bounded source of connections for worker threads."""

    @property
    def size(self) -> int: ...

    def with_connection(self, callback: Callable[[ConnectionProtocol], Any]) -> Any: ...


@runtime_checkable
class PartitionAdapter(Protocol):
    """The partitioning verbs available on a PostgreSQL connection."""

    def create_range_partition(self, table_name: str, partition_key: PartitionKey, **options: Any) -> None: ...

    def create_list_partition(self, table_name: str, partition_key: PartitionKey, **options: Any) -> None: ...

    def create_hash_partition(self, table_name: str, partition_key: PartitionKey, **options: Any) -> None: ...

    def create_range_partition_of(self, table_name: str, start_range: Any, end_range: Any, **options: Any) -> str: ...

    def create_list_partition_of(self, table_name: str, values: Any, **options: Any) -> str: ...

    def create_hash_partition_of(self, table_name: str, modulus: int, remainder: int, **options: Any) -> str: ...

    def create_default_partition_of(self, table_name: str, **options: Any) -> str: ...

    def create_table_like(self, table_name: str, new_table_name: str, **options: Any) -> None: ...

    def attach_range_partition(self, parent: str, child: str, start_range: Any, end_range: Any) -> None: ...

    def attach_list_partition(self, parent: str, child: str, values: Any) -> None: ...

    def attach_hash_partition(self, parent: str, child: str, modulus: int, remainder: int) -> None: ...

    def attach_default_partition(self, parent: str, child: str) -> None: ...

    def detach_partition(self, parent: str, child: str) -> None: ...

    def partitions_for_table_name(
        self,
        table_name: str,
        *,
        include_subpartitions: bool = False,
    ) -> tuple[str, ...]: ...

    def parent_for_table_name(self, table_name: str, *, traverse: bool = False) -> str | None: ...

    def table_partitioned(self, table_name: str) -> bool: ...

    def pg_dump_exclude_args(self) -> list[str]: ...

    def add_index_on_all_partitions(
        self,
        table_name: str,
        columns: str | Sequence[str],
        **options: Any,
    ) -> tuple[str, ...]: ...


def iter_columns(key: str | Sequence[str]) -> Iterator[str]:
    """Yield column names from a single name or a sequence of names."""
    if isinstance(key, str):
        yield key
    else:
        yield from key

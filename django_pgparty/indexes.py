"""Build one logical index across a whole partition tree.

Partitioned tables get ``CREATE INDEX ... ON ONLY`` (catalog only, no data
scan), leaves get the real index, optionally ``CONCURRENTLY``, and each child
index is attached to its parent's with ``ALTER INDEX ... ATTACH PARTITION``.
Every index name is recorded before its statement runs; if anything fails,
including the final validity check, the recorded indexes are dropped newest
first and the original exception is re-raised.

With ``in_threads`` the direct children of the root are built in parallel,
each worker running its whole subtree on a connection borrowed from the pool.
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from django.db import DatabaseError

from django_pgparty.exceptions import (
    IndexNameTooLongError,
    InvalidIndexError,
    PartitioningUsageError,
    ThreadingError,
)
from django_pgparty.introspection import PartitionIntrospector
from django_pgparty.sql import HASH_SUFFIX_LENGTH, MAX_IDENTIFIER_LENGTH, partition_index_name
from django_pgparty.types import iter_columns

if TYPE_CHECKING:
    from collections.abc import Sequence

    from django_pgparty.manager import PartitionManager
    from django_pgparty.types import ConnectionProtocol, PoolProtocol

logger = logging.getLogger(__name__)

# Room for "_" plus the hash suffix appended to child index names.
MAX_INDEX_NAME_LENGTH = MAX_IDENTIFIER_LENGTH - HASH_SUFFIX_LENGTH - 1

MIN_PARTITIONED_INDEX_VERSION = 11

_ACCESS_METHOD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True, slots=True)
class IndexOptions:
    """Resolved options for one ``add_index_on_all_partitions`` call."""

    name: str
    columns: tuple[str, ...]
    unique: bool = False
    using: str | None = None
    where: str | None = None
    concurrently: bool = False

    @classmethod
    def resolve(
        cls,
        table_name: str,
        columns: str | Sequence[str],
        *,
        name: str | None = None,
        unique: bool = False,
        using: str | None = None,
        where: str | None = None,
        algorithm: str | None = None,
    ) -> IndexOptions:
        column_names = tuple(iter_columns(columns))
        if not column_names:
            msg = "at least one column is required"
            raise PartitioningUsageError(msg)
        if using is not None and not _ACCESS_METHOD_RE.match(using):
            msg = f"invalid index access method: {using!r}"
            raise PartitioningUsageError(msg)
        if algorithm is not None and str(algorithm).lower() != "concurrently":
            msg = f"unsupported index algorithm: {algorithm!r} (only 'concurrently' is supported)"
            raise PartitioningUsageError(msg)
        return cls(
            name=name or f"{table_name}_{'_'.join(column_names)}_idx",
            columns=column_names,
            unique=unique,
            using=using,
            where=where,
            concurrently=algorithm is not None,
        )


class IndexBuildRecord:
    """Names of the indexes created so far, in creation order. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._names: list[str] = []

    def add(self, name: str) -> None:
        with self._lock:
            self._names.append(name)

    @property
    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._names)

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)


class ConcurrentIndexBuilder:
    """Creates an index on a partitioned table and every partition below it."""

    def __init__(self, manager: PartitionManager, pool: PoolProtocol | None = None) -> None:
        self.manager = manager
        self._pool = pool

    @property
    def pool(self) -> PoolProtocol:
        if self._pool is None:
            self._pool = self.manager.pool
        return self._pool

    def add_index_on_all_partitions(
        self,
        table_name: str,
        columns: str | Sequence[str],
        *,
        name: str | None = None,
        unique: bool = False,
        using: str | None = None,
        where: str | None = None,
        algorithm: str | None = None,
        in_threads: int | None = None,
    ) -> tuple[str, ...]:
        """Create the index and return the names of every index built.

        Args:
            table_name: Root of the partition tree.
            columns: Column name or names.
            name: Index name on the root, at most 55 characters. Partition
                indexes are named ``{name}_{md5(partition)[:7]}``.
            unique: Build a unique index.
            using: Index access method, e.g. ``"btree"`` or ``"gin"``.
            where: Raw SQL predicate for a partial index.
            algorithm: ``"concurrently"`` to build leaf indexes without
                blocking writes. Must not be used inside a transaction.
            in_threads: Build the root's partitions with this many worker
                threads. Must be lower than the connection pool size.

        Raises:
            IndexNameTooLongError: ``name`` is longer than 55 characters.
            ThreadingError: ``in_threads`` inside a transaction or not below
                the pool size.
            InvalidIndexError: PostgreSQL marked one of the indexes invalid.
        """
        options = IndexOptions.resolve(
            table_name,
            columns,
            name=name,
            unique=unique,
            using=using,
            where=where,
            algorithm=algorithm,
        )
        if len(options.name.encode()) > MAX_INDEX_NAME_LENGTH:
            raise IndexNameTooLongError(options.name, MAX_INDEX_NAME_LENGTH)
        if in_threads is not None:
            if self.manager.connection.in_transaction:
                msg = "in_threads cannot be used within a transaction"
                raise ThreadingError(msg)
            pool_size = self.pool.size
            if in_threads >= pool_size:
                msg = f"in_threads ({in_threads}) must be less than the connection pool size ({pool_size})"
                raise ThreadingError(msg)

        record = IndexBuildRecord()
        try:
            self._build_root(table_name, options, record, in_threads)
            invalid = self.manager.introspector.invalid_indexes(record.names)
            if invalid:
                raise InvalidIndexError(invalid)
        except BaseException:
            logger.warning(
                "Index %s on %s failed, dropping %d created index(es)",
                options.name,
                table_name,
                len(record),
                exc_info=True,
            )
            self._rollback(record)
            raise

        logger.info("Created index %s on %s and %d partition(s)", options.name, table_name, len(record) - 1)
        return record.names

    def _partitioned_indexes(self) -> bool:
        return self.manager.server_version >= MIN_PARTITIONED_INDEX_VERSION

    def _build_root(
        self,
        table_name: str,
        options: IndexOptions,
        record: IndexBuildRecord,
        in_threads: int | None,
    ) -> None:
        connection = self.manager.connection
        introspector = self.manager.introspector
        if not introspector.is_table_partitioned(table_name):
            self._create_leaf_index(connection, table_name, options.name, options, record)
            return

        self._create_partitioned_index(connection, table_name, options.name, options, record)
        children = introspector.child_tables(table_name)
        if not in_threads or len(children) < 2:
            for child in children:
                self._build(connection, introspector, child, options.name, options, record)
            return

        with ThreadPoolExecutor(max_workers=in_threads, thread_name_prefix="pgparty-index") as executor:
            futures = [
                executor.submit(self.pool.with_connection, self._worker(child, options, record))
                for child in children
            ]
            try:
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    def _worker(self, child: str, options: IndexOptions, record: IndexBuildRecord) -> Any:
        def run(connection: ConnectionProtocol) -> None:
            self._build(connection, PartitionIntrospector(connection), child, options.name, options, record)

        return run

    def _build(
        self,
        connection: ConnectionProtocol,
        introspector: PartitionIntrospector,
        table_name: str,
        parent_index_name: str,
        options: IndexOptions,
        record: IndexBuildRecord,
    ) -> None:
        index_name = partition_index_name(options.name, table_name)
        if introspector.is_table_partitioned(table_name):
            self._create_partitioned_index(connection, table_name, index_name, options, record)
            for child in introspector.child_tables(table_name):
                self._build(connection, introspector, child, index_name, options, record)
        else:
            self._create_leaf_index(connection, table_name, index_name, options, record)

        if self._partitioned_indexes():
            connection.execute(self.manager.sql.attach_index(parent_index_name, index_name))

    def _create_partitioned_index(
        self,
        connection: ConnectionProtocol,
        table_name: str,
        index_name: str,
        options: IndexOptions,
        record: IndexBuildRecord,
    ) -> None:
        # PostgreSQL 10 has no indexes on partitioned tables; only leaves get one.
        if not self._partitioned_indexes():
            return
        record.add(index_name)
        connection.execute(self._create_index_sql(table_name, index_name, options, only=True))

    def _create_leaf_index(
        self,
        connection: ConnectionProtocol,
        table_name: str,
        index_name: str,
        options: IndexOptions,
        record: IndexBuildRecord,
    ) -> None:
        record.add(index_name)
        connection.execute(self._create_index_sql(table_name, index_name, options, only=False))

    def _create_index_sql(self, table_name: str, index_name: str, options: IndexOptions, *, only: bool) -> str:
        return self.manager.sql.create_index(
            index_name,
            table_name,
            options.columns,
            unique=options.unique,
            using=options.using,
            where=options.where,
            concurrently=options.concurrently and not only,
            only=only,
        )

    def _rollback(self, record: IndexBuildRecord) -> None:
        connection = self.manager.connection
        for index_name in reversed(record.names):
            try:
                connection.execute(self.manager.sql.drop_index(index_name))
            except DatabaseError:
                logger.exception("Could not drop index %s", index_name)

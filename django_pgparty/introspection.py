"""Catalog queries describing partition trees.

All queries are read-only and scoped to the connection's current schema.
Nothing here touches the metadata cache; callers decide what to memoize.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import DatabaseError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from django_pgparty.types import ConnectionProtocol

logger = logging.getLogger(__name__)

_CHILDREN_SQL = """
    SELECT child.relname
    FROM pg_catalog.pg_inherits
    JOIN pg_catalog.pg_class AS parent ON pg_inherits.inhparent = parent.oid
    JOIN pg_catalog.pg_class AS child ON pg_inherits.inhrelid = child.oid
    JOIN pg_catalog.pg_namespace AS ns ON parent.relnamespace = ns.oid
    WHERE ns.nspname = current_schema()
      AND parent.relname = %s
      AND parent.relkind IN ('r', 'p')
    ORDER BY pg_inherits.inhrelid
"""

_PARENT_SQL = """
    SELECT parent.relname
    FROM pg_catalog.pg_inherits
    JOIN pg_catalog.pg_class AS parent ON pg_inherits.inhparent = parent.oid
    JOIN pg_catalog.pg_class AS child ON pg_inherits.inhrelid = child.oid
    JOIN pg_catalog.pg_namespace AS ns ON child.relnamespace = ns.oid
    WHERE ns.nspname = current_schema()
      AND child.relname = %s
      AND child.relkind IN ('r', 'p')
"""

_RELKIND_SQL = """
    SELECT c.relkind
    FROM pg_catalog.pg_class AS c
    JOIN pg_catalog.pg_namespace AS ns ON c.relnamespace = ns.oid
    WHERE c.relname = %s
      AND ns.nspname = current_schema()
"""

_PRIMARY_KEY_SQL = """
    SELECT 1
    FROM pg_catalog.pg_constraint AS con
    JOIN pg_catalog.pg_class AS c ON con.conrelid = c.oid
    JOIN pg_catalog.pg_namespace AS ns ON c.relnamespace = ns.oid
    WHERE con.contype = 'p'
      AND c.relname = %s
      AND ns.nspname = current_schema()
"""

_INVALID_INDEXES_SQL = """
    SELECT c.relname
    FROM pg_catalog.pg_index
    JOIN pg_catalog.pg_class AS c ON pg_index.indexrelid = c.oid
    WHERE NOT pg_index.indisvalid
      AND c.relname = ANY(%s)
"""

_ALL_PARTITIONS_SQL = """
    SELECT CONCAT(ns.nspname, '.', child.relname)
    FROM pg_catalog.pg_inherits
    JOIN pg_catalog.pg_class AS parent ON pg_inherits.inhparent = parent.oid
    JOIN pg_catalog.pg_class AS child ON pg_inherits.inhrelid = child.oid
    JOIN pg_catalog.pg_namespace AS ns ON parent.relnamespace = ns.oid
    WHERE parent.relkind = 'p'
    ORDER BY 1
"""


class PartitionIntrospector:
    """Discover parents, children and partitioning status of tables."""

    def __init__(self, connection: ConnectionProtocol) -> None:
        self.connection = connection

    def child_tables(self, table_name: str) -> list[str]:
        """Direct partitions of ``table_name``, oldest first. Errors propagate."""
        return self.connection.select_values(_CHILDREN_SQL, [table_name])

    def partitions_for_table(self, table_name: str, *, include_subpartitions: bool = False) -> tuple[str, ...]:
        """Partitions of ``table_name``, never including the table itself.

        With ``include_subpartitions`` each child is followed by its own
        descendants before the next sibling. A failing catalog query is
        treated as "no partitions known" and yields an empty tuple.
        """
        try:
            return tuple(self._walk(table_name, recursive=include_subpartitions))
        except DatabaseError:
            logger.debug("Could not list partitions of %s", table_name, exc_info=True)
            return ()

    def _walk(self, table_name: str, *, recursive: bool) -> Iterator[str]:
        stack = [iter(self.child_tables(table_name))]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                continue
            yield child
            if recursive:
                stack.append(iter(self.child_tables(child)))

    def parent_for_table(self, table_name: str, *, traverse: bool = False) -> str | None:
        """The table ``table_name`` is attached to, or its top-level ancestor with ``traverse``."""
        try:
            parent = self._parent(table_name)
            if parent is None or not traverse:
                return parent
            seen = {table_name, parent}
            while (grandparent := self._parent(parent)) is not None and grandparent not in seen:
                seen.add(grandparent)
                parent = grandparent
        except DatabaseError:
            logger.debug("Could not look up parent of %s", table_name, exc_info=True)
            return None
        return parent

    def _parent(self, table_name: str) -> str | None:
        values = self.connection.select_values(_PARENT_SQL, [table_name])
        return values[0] if values else None

    def is_table_partitioned(self, table_name: str) -> bool:
        values = self.connection.select_values(_RELKIND_SQL, [table_name])
        return bool(values) and values[0] == "p"

    def has_primary_key(self, table_name: str) -> bool:
        return bool(self.connection.select_values(_PRIMARY_KEY_SQL, [table_name]))

    def invalid_indexes(self, index_names: Sequence[str]) -> tuple[str, ...]:
        """Those of ``index_names`` that PostgreSQL has marked invalid."""
        if not index_names:
            return ()
        return tuple(self.connection.select_values(_INVALID_INDEXES_SQL, [list(index_names)]))

    def all_partition_tables(self) -> list[str]:
        """Schema-qualified names of every partition of a partitioned table."""
        return self.connection.select_values(_ALL_PARTITIONS_SQL)

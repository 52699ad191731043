"""Partition manager: the partitioning verbs for one PostgreSQL connection.

Typical use from a migration or management command::

    from django_pgparty import get_partition_manager

    manager = get_partition_manager()
    manager.create_range_partition(
        "orders",
        partition_key=lambda: "(created_at::date)",
        id_type="uuid",
        columns=lambda t: t.column("created_at", models.DateTimeField()),
    )
    manager.create_range_partition_of("orders", start_range="2024-01-01", end_range="2024-02-01")

Each public operation runs inside ``transaction.atomic`` on the manager's
connection (a savepoint when the caller already holds a transaction) and clears
the metadata cache once the DDL has been executed.
"""

from __future__ import annotations

import logging
from functools import cached_property
from typing import TYPE_CHECKING, Any

from django.apps import apps
from django.db.models import NOT_PROVIDED

from django_pgparty.cache import MetadataCache
from django_pgparty.conf import get_config
from django_pgparty.connection import ConnectionPool
from django_pgparty.exceptions import (
    CompositePrimaryKeyError,
    MissingOptionError,
    PartitionVersionError,
)
from django_pgparty.indexes import ConcurrentIndexBuilder
from django_pgparty.introspection import PartitionIntrospector
from django_pgparty.sql import (
    MAX_IDENTIFIER_LENGTH,
    PartitionSQL,
    TableDefinition,
    hashed_table_name,
    short_hash,
    template_table_name,
)
from django_pgparty.types import (
    HashBounds,
    IdType,
    ListValues,
    PartitionOfSpec,
    PartitionSpec,
    PartitionType,
    RangeBounds,
    iter_columns,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from django_pgparty.conf import PartitioningConfig
    from django_pgparty.types import (
        ConnectionProtocol,
        Constraint,
        PartitionKey,
        PoolProtocol,
        PrimaryKey,
    )

logger = logging.getLogger(__name__)

MIN_PARTITIONING_VERSION = 10
MIN_HASH_PARTITIONING_VERSION = 11
MIN_DEFAULT_PARTITION_VERSION = 11


def _singularize(name: str) -> str:
    if name.endswith("ies"):
        return name[:-3] + "y"
    if name.endswith("s") and not name.endswith("ss"):
        return name[:-1]
    return name


def resolve_primary_key(table_name: str) -> PrimaryKey:
    """Primary key column(s) of the installed model stored in ``table_name``.

    Matches on ``db_table`` first. Only when no model uses the table does the
    model name get compared with the singular form of the table name. Falls
    back to Django's conventional ``"id"``.
    """
    singular = _singularize(table_name)
    installed = apps.get_models()
    model = next((m for m in installed if m._meta.db_table in (table_name, singular)), None)
    if model is None:
        model = next((m for m in installed if m._meta.model_name == singular.replace("_", "")), None)
    if model is None or model._meta.pk is None:
        return "id"
    pk = model._meta.pk
    if pk.column is None:
        return tuple(field.column for field in pk.fields)  # type: ignore[attr-defined]
    return pk.column


def _primary_key_columns(primary_key: PrimaryKey) -> tuple[str, ...]:
    if not primary_key or primary_key is True:
        return ()
    return tuple(iter_columns(primary_key))  # type: ignore[arg-type]


def _validate_primary_key(primary_key: PrimaryKey) -> None:
    if isinstance(primary_key, (list, tuple)):
        raise CompositePrimaryKeyError(primary_key)


def _supporting_index_name(table_name: str, columns: Sequence[str]) -> str:
    name = f"{table_name}_{'_'.join(columns)}_idx"
    if len(name) <= MAX_IDENTIFIER_LENGTH:
        return name
    prefix = table_name[: MAX_IDENTIFIER_LENGTH - 12]
    return f"{prefix}_{short_hash(name)}_idx"


class PartitionManager:
    """Create, attach, detach, index and inspect PostgreSQL partitions.

    Implements :class:`~django_pgparty.types.PartitionAdapter`.

    Args:
        connection: The connection DDL is executed on.
        config: Defaults for template tables, primary keys and caching.
            Read from Django settings when omitted.
        cache: Metadata cache cleared after every DDL statement. A private
            cache built from ``config`` is used when omitted.
        primary_key_resolver: Maps a table name to its conventional primary
            key; defaults to :func:`resolve_primary_key`.
        pool: Connection source for ``add_index_on_all_partitions(in_threads=...)``.
    """

    def __init__(
        self,
        connection: ConnectionProtocol,
        *,
        config: PartitioningConfig | None = None,
        cache: MetadataCache | None = None,
        primary_key_resolver: Callable[[str], PrimaryKey] | None = None,
        pool: PoolProtocol | None = None,
    ) -> None:
        self.connection = connection
        self.config = config if config is not None else get_config()
        self.cache = cache if cache is not None else MetadataCache.from_config(self.config)
        self.introspector = PartitionIntrospector(connection)
        self.sql = PartitionSQL(connection.quote_name, connection.quote)
        self._primary_key_resolver = primary_key_resolver or resolve_primary_key
        self._pool = pool

    @cached_property
    def server_version(self) -> int:
        return self.connection.server_version

    @property
    def pool(self) -> PoolProtocol:
        if self._pool is None:
            self._pool = ConnectionPool(self.connection.alias, self.config.pool_size)
        return self._pool

    # =========================================================================
    # Validation helpers
    # =========================================================================

    def _require_version(self, feature: str, required: int) -> None:
        if self.server_version < required:
            raise PartitionVersionError(feature, required, self.server_version)

    def _validate_partition_type(self, partition_type: str | PartitionType) -> PartitionType:
        self._require_version("Declarative partitions", MIN_PARTITIONING_VERSION)
        partition_type = PartitionType.coerce(partition_type)
        if partition_type is PartitionType.HASH:
            self._require_version("Hash partitions", MIN_HASH_PARTITIONING_VERSION)
        return partition_type

    def _validate_constraint(self, constraint: Constraint | None) -> None:
        if constraint is None:
            self._require_version("Default partitions", MIN_DEFAULT_PARTITION_VERSION)
        elif isinstance(constraint, HashBounds):
            self._require_version("Hash partitions", MIN_HASH_PARTITIONING_VERSION)

    def _primary_key_for(self, table_name: str, primary_key: Any) -> PrimaryKey:
        if primary_key is NOT_PROVIDED:
            return self._primary_key_resolver(table_name)
        return primary_key

    def _uuid_function(self) -> str:
        return "gen_random_uuid()" if self.connection.supports_pgcrypto_uuid() else "uuid_generate_v4()"

    # =========================================================================
    # Partitioned tables
    # =========================================================================

    def create_range_partition(self, table_name: str, partition_key: PartitionKey, **options: Any) -> None:
        self._create_partition(table_name, PartitionType.RANGE, partition_key, **options)

    def create_list_partition(self, table_name: str, partition_key: PartitionKey, **options: Any) -> None:
        self._create_partition(table_name, PartitionType.LIST, partition_key, **options)

    def create_hash_partition(self, table_name: str, partition_key: PartitionKey, **options: Any) -> None:
        self._create_partition(table_name, PartitionType.HASH, partition_key, **options)

    def _create_partition(
        self,
        table_name: str,
        partition_type: str | PartitionType,
        partition_key: PartitionKey,
        *,
        columns: Callable[[TableDefinition], None] | None = None,
        id_type: IdType | str | None = IdType.BIGSERIAL,
        primary_key: Any = NOT_PROVIDED,
        template: bool | None = None,
        create_with_primary_key: bool | None = None,
    ) -> None:
        spec = PartitionSpec(
            table_name=table_name,
            partition_type=PartitionType.coerce(partition_type),
            partition_key=partition_key,
            primary_key=self._primary_key_for(table_name, primary_key),
            id_type=id_type or None,
            template=self.config.create_template_tables if template is None else template,
            create_with_primary_key=(
                self.config.create_with_primary_key if create_with_primary_key is None else create_with_primary_key
            ),
        )
        self.create_partitioned_table(spec, columns=columns)

    def create_partitioned_table(
        self,
        spec: PartitionSpec,
        columns: Callable[[TableDefinition], None] | None = None,
    ) -> None:
        """Create ``spec.table_name`` as a partitioned parent, plus its template table.

        Without ``create_with_primary_key`` the generated key column is
        ``NOT NULL`` but not a primary key on the parent; each partition gets
        its own. With it, the parent carries ``PRIMARY KEY (...)`` (which
        PostgreSQL requires to include the partition key columns).
        """
        partition_type = self._validate_partition_type(spec.partition_type)
        if not spec.create_with_primary_key:
            _validate_primary_key(spec.primary_key)

        pk_columns = _primary_key_columns(spec.primary_key)
        definition = TableDefinition(spec.table_name, self.connection.column_type)
        if spec.id_type and pk_columns:
            default = self._uuid_function() if spec.id_type == IdType.UUID else None
            definition.column(pk_columns[0], str(spec.id_type), null=False, default=default)
        if columns is not None:
            columns(definition)
        if spec.create_with_primary_key and pk_columns:
            definition.primary_key(*pk_columns)

        with self.connection.atomic():
            self.connection.execute(
                self.sql.create_table(definition, self.sql.partition_by_clause(partition_type, spec.partition_key)),
            )
            if spec.template:
                self.create_table_like(
                    spec.table_name,
                    template_table_name(spec.table_name),
                    primary_key=spec.primary_key if spec.id_type else False,
                    create_with_primary_key=spec.create_with_primary_key,
                )
        self.cache.clear()
        logger.info("Created %s partitioned table %s", partition_type, spec.table_name)

    def create_table_like(
        self,
        table_name: str,
        new_table_name: str,
        *,
        primary_key: Any = NOT_PROVIDED,
        partition_type: str | PartitionType | None = None,
        partition_key: PartitionKey | None = None,
        create_with_primary_key: bool | None = None,
    ) -> None:
        """``CREATE TABLE new (LIKE table INCLUDING ALL)``, then add a missing primary key.

        With ``partition_type`` the copy is itself partitioned and no primary
        key is added; indexes are excluded unless ``create_with_primary_key``.
        """
        primary_key = self._primary_key_for(table_name, primary_key)
        if create_with_primary_key is None:
            create_with_primary_key = self.config.create_with_primary_key
        if not create_with_primary_key:
            _validate_primary_key(primary_key)

        partition_clause = None
        if partition_type is not None:
            partition_type = self._validate_partition_type(partition_type)
            if partition_key is None:
                raise MissingOptionError("partition_key", "partition_type")
            partition_clause = self.sql.partition_by_clause(partition_type, partition_key)

        with self.connection.atomic():
            self.connection.execute(
                self.sql.create_table_like(
                    table_name,
                    new_table_name,
                    excluding_indexes=partition_type is not None and not create_with_primary_key,
                    partition_clause=partition_clause,
                ),
            )
            pk_columns = _primary_key_columns(primary_key)
            if partition_type is None and pk_columns and not self.introspector.has_primary_key(new_table_name):
                self.connection.execute(self.sql.add_primary_key(new_table_name, pk_columns))
        self.cache.clear()

    # =========================================================================
    # Child partitions
    # =========================================================================

    def create_range_partition_of(self, table_name: str, start_range: Any, end_range: Any, **options: Any) -> str:
        return self._create_partition_of(table_name, RangeBounds(start_range, end_range), **options)

    def create_list_partition_of(self, table_name: str, values: Any, **options: Any) -> str:
        return self._create_partition_of(table_name, ListValues(values), **options)

    def create_hash_partition_of(self, table_name: str, modulus: int, remainder: int, **options: Any) -> str:
        return self._create_partition_of(table_name, HashBounds(modulus, remainder), **options)

    def create_default_partition_of(self, table_name: str, **options: Any) -> str:
        return self._create_partition_of(table_name, None, **options)

    def _create_partition_of(self, table_name: str, constraint: Constraint | None, **options: Any) -> str:
        return self.create_partition_of(self.partition_of_spec(table_name, constraint, **options))

    def partition_of_spec(
        self,
        table_name: str,
        constraint: Constraint | None,
        *,
        name: str | None = None,
        primary_key: Any = NOT_PROVIDED,
        index: bool = True,
        partition_type: str | PartitionType | None = None,
        partition_key: PartitionKey | None = None,
    ) -> PartitionOfSpec:
        """Build a :class:`PartitionOfSpec`, resolving the primary key by naming convention."""
        return PartitionOfSpec(
            parent_table_name=table_name,
            constraint=constraint,
            name=name,
            primary_key=self._primary_key_for(table_name, primary_key),
            index=index,
            partition_type=PartitionType.coerce(partition_type) if partition_type is not None else None,
            partition_key=partition_key,
        )

    def create_partition_of(self, spec: PartitionOfSpec) -> str:
        """Create and attach a child partition, returning its table name.

        The child is cloned from the template table of the tree's root when
        one exists, otherwise from the parent itself.
        """
        self._validate_constraint(spec.constraint)
        if spec.partition_type is not None:
            self._validate_partition_type(spec.partition_type)
            if spec.partition_key is None:
                raise MissingOptionError("partition_key", "partition_type")

        parent = spec.parent_table_name
        constraint_clause = self.sql.constraint_clause(spec.constraint)
        child = spec.name or hashed_table_name(parent, constraint_clause)
        root = self.introspector.parent_for_table(parent, traverse=True) or parent
        template = template_table_name(root)

        with self.connection.atomic():
            if self.connection.table_exists(template):
                source, primary_key = template, False
            else:
                source, primary_key = parent, spec.primary_key
            self.create_table_like(
                source,
                child,
                primary_key=primary_key,
                partition_type=spec.partition_type,
                partition_key=spec.partition_key,
            )

            if spec.is_default:
                self.connection.execute(self.sql.attach_default_partition(parent, child))
            else:
                self.connection.execute(self.sql.attach_partition(parent, child, constraint_clause))

            index_columns = self._supporting_index_columns(spec)
            if index_columns:
                self.connection.execute(
                    self.sql.create_index(_supporting_index_name(child, index_columns), child, index_columns),
                )

        self.cache.clear()
        logger.info("Created partition %s of %s", child, parent)
        return child

    def _supporting_index_columns(self, spec: PartitionOfSpec) -> tuple[str, ...]:
        key = spec.partition_key
        if not spec.index or key is None or callable(key):
            return ()
        columns = tuple(iter_columns(key))
        if columns == _primary_key_columns(spec.primary_key):
            return ()
        return columns

    # =========================================================================
    # Attach / detach
    # =========================================================================

    def attach_range_partition(self, parent: str, child: str, start_range: Any, end_range: Any) -> None:
        self.attach_partition(parent, child, RangeBounds(start_range, end_range))

    def attach_list_partition(self, parent: str, child: str, values: Any) -> None:
        self.attach_partition(parent, child, ListValues(values))

    def attach_hash_partition(self, parent: str, child: str, modulus: int, remainder: int) -> None:
        self.attach_partition(parent, child, HashBounds(modulus, remainder))

    def attach_default_partition(self, parent: str, child: str) -> None:
        self.attach_partition(parent, child, None)

    def attach_partition(self, parent: str, child: str, constraint: Constraint | None) -> None:
        self._validate_constraint(constraint)
        constraint_clause = self.sql.constraint_clause(constraint)
        if constraint_clause is None:
            sql = self.sql.attach_default_partition(parent, child)
        else:
            sql = self.sql.attach_partition(parent, child, constraint_clause)
        with self.connection.atomic():
            self.connection.execute(sql)
        self.cache.clear()

    def detach_partition(self, parent: str, child: str) -> None:
        """Detach ``child`` from ``parent``. The child is kept as a standalone table."""
        with self.connection.atomic():
            self.connection.execute(self.sql.detach_partition(parent, child))
        self.cache.clear()

    # =========================================================================
    # Introspection
    # =========================================================================

    def partitions_for_table_name(
        self,
        table_name: str,
        *,
        include_subpartitions: bool | None = None,
    ) -> tuple[str, ...]:
        if include_subpartitions is None:
            include_subpartitions = self.config.include_subpartitions_in_partition_list
        return self.cache.fetch_partitions(
            (self.connection.alias, table_name),
            include_subpartitions,
            lambda: self.introspector.partitions_for_table(table_name, include_subpartitions=include_subpartitions),
        )

    def parent_for_table_name(self, table_name: str, *, traverse: bool = False) -> str | None:
        return self.introspector.parent_for_table(table_name, traverse=traverse)

    def table_partitioned(self, table_name: str) -> bool:
        return self.introspector.is_table_partitioned(table_name)

    def pg_dump_exclude_args(self) -> list[str]:
        """``-T schema.table`` arguments that keep partitions out of ``pg_dump`` output."""
        if not self.config.schema_exclude_partitions:
            return []
        return [arg for table in self.introspector.all_partition_tables() for arg in ("-T", table)]

    # =========================================================================
    # Indexes
    # =========================================================================

    def add_index_on_all_partitions(
        self,
        table_name: str,
        columns: str | Sequence[str],
        **options: Any,
    ) -> tuple[str, ...]:
        """Build one index across the whole partition tree of ``table_name``.

        See :meth:`ConcurrentIndexBuilder.add_index_on_all_partitions` for options.
        """
        return ConcurrentIndexBuilder(self).add_index_on_all_partitions(table_name, columns, **options)

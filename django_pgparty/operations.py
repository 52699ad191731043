"""Migration operations for partitioned tables.

Usable in hand-written migrations::

    from django.db import migrations, models
    from django_pgparty.operations import CreatePartitionedTable, CreatePartitionOf
    from django_pgparty.types import RangeBounds


    class Migration(migrations.Migration):
        operations = [
            CreatePartitionedTable(
                "orders",
                "range",
                partition_key="created_at",
                fields=[("created_at", models.DateTimeField())],
                primary_key=False,
                id_type=None,
            ),
            CreatePartitionOf("orders", RangeBounds("2024-01-01", "2024-02-01"), name="orders_2024_01"),
        ]

The operations only touch the database; they never change migration state, so
pair them with ``managed = False`` models. On databases other than PostgreSQL
they do nothing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from django.contrib.postgres.operations import NotInTransactionMixin
from django.db.migrations.operations.base import Operation
from django.db.models import NOT_PROVIDED

from django_pgparty.cache import get_default_cache
from django_pgparty.conf import get_config
from django_pgparty.connection import DatabaseConnection
from django_pgparty.indexes import IndexOptions
from django_pgparty.manager import PartitionManager
from django_pgparty.sql import hashed_table_name, template_table_name
from django_pgparty.types import IdType, PartitionType

if TYPE_CHECKING:
    from collections.abc import Sequence

    from django.db.models import Field

    from django_pgparty.sql import TableDefinition
    from django_pgparty.types import Constraint, PartitionKey


def _manager(schema_editor: Any) -> PartitionManager:
    return PartitionManager(
        DatabaseConnection(schema_editor.connection),
        config=get_config(),
        cache=get_default_cache(),
    )


def _drop_table(schema_editor: Any, table_name: str) -> None:
    schema_editor.execute(f"DROP TABLE IF EXISTS {schema_editor.quote_name(table_name)} CASCADE")


class PartitionOperation(Operation):
    """Base class: database-only, PostgreSQL-only."""

    reduces_to_sql = False

    def state_forwards(self, app_label: str, state: Any) -> None:
        pass

    def database_forwards(self, app_label: str, schema_editor: Any, from_state: Any, to_state: Any) -> None:
        if schema_editor.connection.vendor == "postgresql":
            self.apply(_manager(schema_editor), schema_editor)

    def database_backwards(self, app_label: str, schema_editor: Any, from_state: Any, to_state: Any) -> None:
        if schema_editor.connection.vendor == "postgresql":
            self.unapply(_manager(schema_editor), schema_editor)

    def apply(self, manager: PartitionManager, schema_editor: Any) -> None:
        raise NotImplementedError

    def unapply(self, manager: PartitionManager, schema_editor: Any) -> None:
        raise NotImplementedError


class CreatePartitionedTable(PartitionOperation):
    """Create a partitioned parent table (and its template table)."""

    def __init__(
        self,
        table_name: str,
        partition_type: str,
        partition_key: PartitionKey,
        fields: Sequence[tuple[str, Field]] = (),
        id_type: str | None = IdType.BIGSERIAL,
        primary_key: Any = NOT_PROVIDED,
        template: bool | None = None,
        create_with_primary_key: bool | None = None,
    ) -> None:
        self.table_name = table_name
        self.partition_type = PartitionType.coerce(partition_type)
        self.partition_key = partition_key
        self.fields = list(fields)
        self.id_type = id_type
        self.primary_key = primary_key
        self.template = template
        self.create_with_primary_key = create_with_primary_key

    def _columns(self, definition: TableDefinition) -> None:
        for name, field in self.fields:
            definition.column(name, field)

    def apply(self, manager: PartitionManager, schema_editor: Any) -> None:
        verb = getattr(manager, f"create_{self.partition_type}_partition")
        verb(
            self.table_name,
            self.partition_key,
            columns=self._columns,
            id_type=self.id_type,
            primary_key=self.primary_key,
            template=self.template,
            create_with_primary_key=self.create_with_primary_key,
        )

    def unapply(self, manager: PartitionManager, schema_editor: Any) -> None:
        _drop_table(schema_editor, template_table_name(self.table_name))
        _drop_table(schema_editor, self.table_name)
        manager.cache.clear()

    def describe(self) -> str:
        return f"Create {self.partition_type} partitioned table {self.table_name}"

    @property
    def migration_name_fragment(self) -> str:
        return f"create_partitioned_{self.table_name.lower()}"


class CreatePartitionOf(PartitionOperation):
    """Create a partition of ``table_name``. ``constraint=None`` creates the default partition."""

    def __init__(
        self,
        table_name: str,
        constraint: Constraint | None,
        name: str | None = None,
        primary_key: Any = NOT_PROVIDED,
        index: bool = True,
        partition_type: str | None = None,
        partition_key: PartitionKey | None = None,
    ) -> None:
        self.table_name = table_name
        self.constraint = constraint
        self.name = name
        self.primary_key = primary_key
        self.index = index
        self.partition_type = partition_type
        self.partition_key = partition_key

    def _child_name(self, manager: PartitionManager) -> str:
        if self.name:
            return self.name
        return hashed_table_name(self.table_name, manager.sql.constraint_clause(self.constraint))

    def apply(self, manager: PartitionManager, schema_editor: Any) -> None:
        options = {
            "name": self.name,
            "primary_key": self.primary_key,
            "index": self.index,
            "partition_type": self.partition_type,
            "partition_key": self.partition_key,
        }
        manager.create_partition_of(manager.partition_of_spec(self.table_name, self.constraint, **options))

    def unapply(self, manager: PartitionManager, schema_editor: Any) -> None:
        _drop_table(schema_editor, self._child_name(manager))
        manager.cache.clear()

    def describe(self) -> str:
        if self.constraint is None:
            return f"Create default partition of {self.table_name}"
        return f"Create partition of {self.table_name}"

    @property
    def migration_name_fragment(self) -> str:
        return f"create_partition_of_{self.table_name.lower()}"


class DetachPartition(PartitionOperation):
    """Detach ``child_table_name``; reversible when the original constraint is given."""

    def __init__(
        self,
        table_name: str,
        child_table_name: str,
        constraint: Constraint | None = None,
        default: bool = False,
    ) -> None:
        self.table_name = table_name
        self.child_table_name = child_table_name
        self.constraint = constraint
        self.default = default

    @property
    def reversible(self) -> bool:  # type: ignore[override]
        return self.default or self.constraint is not None

    def apply(self, manager: PartitionManager, schema_editor: Any) -> None:
        manager.detach_partition(self.table_name, self.child_table_name)

    def unapply(self, manager: PartitionManager, schema_editor: Any) -> None:
        manager.attach_partition(self.table_name, self.child_table_name, None if self.default else self.constraint)

    def describe(self) -> str:
        return f"Detach partition {self.child_table_name} from {self.table_name}"

    @property
    def migration_name_fragment(self) -> str:
        return f"detach_{self.child_table_name.lower()}"


class AddIndexOnAllPartitions(NotInTransactionMixin, PartitionOperation):
    """Build an index on a partitioned table and all of its partitions.

    With ``algorithm="concurrently"`` (or ``in_threads``) the migration must
    set ``atomic = False``.
    """

    def __init__(
        self,
        table_name: str,
        columns: str | Sequence[str],
        name: str | None = None,
        unique: bool = False,
        using: str | None = None,
        where: str | None = None,
        algorithm: str | None = None,
        in_threads: int | None = None,
    ) -> None:
        self.table_name = table_name
        self.columns = columns
        self.options = IndexOptions.resolve(
            table_name,
            columns,
            name=name,
            unique=unique,
            using=using,
            where=where,
            algorithm=algorithm,
        )
        self.in_threads = in_threads

    def apply(self, manager: PartitionManager, schema_editor: Any) -> None:
        if self.options.concurrently or self.in_threads:
            self._ensure_not_in_transaction(schema_editor)
        manager.add_index_on_all_partitions(
            self.table_name,
            self.options.columns,
            name=self.options.name,
            unique=self.options.unique,
            using=self.options.using,
            where=self.options.where,
            algorithm="concurrently" if self.options.concurrently else None,
            in_threads=self.in_threads,
        )

    def unapply(self, manager: PartitionManager, schema_editor: Any) -> None:
        schema_editor.execute(manager.sql.drop_index(self.options.name))

    def describe(self) -> str:
        return f"Create index {self.options.name} on {self.table_name} and its partitions"

    @property
    def migration_name_fragment(self) -> str:
        return self.options.name.lower()

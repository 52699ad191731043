"""Model-level helpers for partitioned tables.

Declare how a model's table is partitioned and give it a
:class:`PartitionedManager`::

    from django.db import models
    from django_pgparty.models import PartitionedManager, range_partition_by


    class Order(models.Model):
        id = models.UUIDField(primary_key=True)
        created_at = models.DateTimeField()

        partitioning = range_partition_by(lambda: "created_at::date")
        objects = PartitionedManager()

        class Meta:
            db_table = "orders"
            managed = False

Then::

    Order.objects.create_partition(start_range=date(2024, 1, 1), end_range=date(2024, 2, 1))
    Order.objects.partition_key_in(date(2024, 1, 1), date(2024, 1, 15))
    Order.objects.in_partition("orders_4a1b2c3")
    Order.objects.partitions()
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import reduce
from operator import or_
from typing import TYPE_CHECKING, Any

from asgiref.sync import sync_to_async
from django.core.exceptions import FieldDoesNotExist, ImproperlyConfigured
from django.db import models, router, transaction
from django.db.models import Q
from django.db.models.expressions import RawSQL
from django.db.models.sql import Query
from django.db.models.sql.datastructures import BaseTable

from django_pgparty import get_partition_manager
from django_pgparty.cache import get_default_cache
from django_pgparty.exceptions import MissingOptionError, PartitioningUsageError
from django_pgparty.types import PartitionType, iter_columns

if TYPE_CHECKING:
    from collections.abc import Sequence

    from django_pgparty.manager import PartitionManager
    from django_pgparty.types import PartitionKey

_KEY_ALIAS = "partition_key_value"


def _async(method_name: str) -> Any:
    """Create an async wrapper for a sync method."""

    async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        return await sync_to_async(getattr(self, method_name))(*args, **kwargs)

    wrapper.__name__ = f"a{method_name}"
    return wrapper


@dataclass(frozen=True, slots=True)
class PartitionBy:
    """How a model's table is partitioned: strategy plus key."""

    partition_type: PartitionType
    key: PartitionKey

    @property
    def is_expression(self) -> bool:
        return callable(self.key)

    @property
    def columns(self) -> tuple[str, ...]:
        if self.is_expression:
            return ()
        return tuple(iter_columns(self.key))  # type: ignore[arg-type]

    def expression(self) -> RawSQL:
        return RawSQL(f"({self.key()})", (), output_field=models.Field())  # type: ignore[operator]


def range_partition_by(key: PartitionKey) -> PartitionBy:
    return PartitionBy(PartitionType.RANGE, key)


def list_partition_by(key: PartitionKey) -> PartitionBy:
    return PartitionBy(PartitionType.LIST, key)


def hash_partition_by(key: PartitionKey) -> PartitionBy:
    return PartitionBy(PartitionType.HASH, key)


class PartitionQuery(Query):
    """A query reading from one partition instead of the model's table.

    The partition is aliased as the model's table, so every column reference
    and filter compiled for the model keeps working unchanged.
    """

    partition_table: str | None = None

    def get_initial_alias(self) -> str | None:
        alias = super().get_initial_alias()
        if self.partition_table and alias is not None:
            base = self.alias_map[alias]
            if isinstance(base, BaseTable) and base.table_name != self.partition_table:
                self.alias_map[alias] = BaseTable(self.partition_table, alias)
        return alias


def partition_query(model: type[models.Model], partition_table: str) -> PartitionQuery:
    """A fresh query on ``model`` whose rows come from ``partition_table``."""
    query = PartitionQuery(model)
    query.partition_table = partition_table
    query.get_initial_alias()
    return query


def _lexicographic(names: Sequence[str], values: Sequence[Any], op: str, strict_op: str) -> Q:
    # Row comparison (a, b) OP (x, y) spelled out column by column.
    condition = Q(**{f"{names[-1]}__{op}": values[-1]})
    for name, value in zip(reversed(names[:-1]), reversed(values[:-1]), strict=True):
        condition = Q(**{f"{name}__{strict_op}": value}) | (Q(**{name: value}) & condition)
    return condition


class PartitionedQuerySet(models.QuerySet):
    """QuerySet with partition key filters and partition management shortcuts."""

    # =========================================================================
    # Model metadata
    # =========================================================================

    def _partitioning(self) -> PartitionBy:
        partitioning = getattr(self.model, "partitioning", None)
        if not isinstance(partitioning, PartitionBy):
            msg = (
                f"{self.model._meta.label} has no partitioning declared; set "
                "`partitioning = range_partition_by(...)` (or list/hash) on the model"
            )
            raise ImproperlyConfigured(msg)
        return partitioning

    def _write_db(self) -> str:
        return self._db or router.db_for_write(self.model, **self._hints)

    def _partition_manager(self) -> PartitionManager:
        return get_partition_manager(self._write_db())

    def _key_field_names(self, partitioning: PartitionBy) -> list[str]:
        opts = self.model._meta
        by_column = {field.column: field.attname for field in opts.concrete_fields}
        names = []
        for column in partitioning.columns:
            if column in by_column:
                names.append(by_column[column])
                continue
            try:
                names.append(opts.get_field(column).attname)
            except FieldDoesNotExist:
                msg = f"Partition key column {column!r} is not a field of {opts.label}"
                raise PartitioningUsageError(msg) from None
        return names

    @staticmethod
    def _key_values(names: Sequence[str], value: Any) -> tuple[Any, ...]:
        if len(names) == 1:
            return (value,)
        if not isinstance(value, (list, tuple)) or len(value) != len(names):
            msg = f"partition key has {len(names)} columns, got {value!r}"
            raise ValueError(msg)
        return tuple(value)

    # =========================================================================
    # Filters
    # =========================================================================

    def partition_key_eq(self, value: Any) -> PartitionedQuerySet:
        """Rows whose partition key equals ``value`` (a sequence for composite keys)."""
        partitioning = self._partitioning()
        if partitioning.is_expression:
            return self.alias(**{_KEY_ALIAS: partitioning.expression()}).filter(**{_KEY_ALIAS: value})
        names = self._key_field_names(partitioning)
        return self.filter(**dict(zip(names, self._key_values(names, value), strict=True)))

    def partition_key_in(self, *values: Any) -> PartitionedQuerySet:
        """Rows a partition with these bounds would hold.

        Range partitions take ``(start, end)`` with ``start`` inclusive and
        ``end`` exclusive. List and hash partitions take any number of values.
        """
        partitioning = self._partitioning()
        if partitioning.partition_type is PartitionType.RANGE:
            if len(values) != 2:
                msg = "partition_key_in() on a range partitioned model takes (start, end)"
                raise TypeError(msg)
            return self._partition_key_range(partitioning, *values)

        if partitioning.is_expression:
            return self.alias(**{_KEY_ALIAS: partitioning.expression()}).filter(**{f"{_KEY_ALIAS}__in": values})
        names = self._key_field_names(partitioning)
        if len(names) == 1:
            return self.filter(**{f"{names[0]}__in": values})
        if not values:
            return self.none()
        conditions = [Q(**dict(zip(names, self._key_values(names, value), strict=True))) for value in values]
        return self.filter(reduce(or_, conditions))

    def _partition_key_range(self, partitioning: PartitionBy, start: Any, end: Any) -> PartitionedQuerySet:
        if partitioning.is_expression:
            return self.alias(**{_KEY_ALIAS: partitioning.expression()}).filter(
                **{f"{_KEY_ALIAS}__gte": start, f"{_KEY_ALIAS}__lt": end},
            )
        names = self._key_field_names(partitioning)
        start_values = self._key_values(names, start)
        end_values = self._key_values(names, end)
        return self.filter(
            _lexicographic(names, start_values, "gte", "gt") & _lexicographic(names, end_values, "lt", "lt"),
        )

    def in_partition(self, child_table_name: str) -> PartitionedQuerySet:
        """Read from the partition ``child_table_name`` directly.

        Only the ``FROM`` clause changes. ``update()`` and ``delete()`` still
        target the model's table.
        """
        clone = self._chain()
        query = clone.query.chain(klass=PartitionQuery)
        query.partition_table = child_table_name
        query.get_initial_alias()
        clone.query = query
        return clone

    # =========================================================================
    # Partition management
    # =========================================================================

    def partitions(self, include_subpartitions: bool | None = None) -> list[str]:
        """Names of this model's partitions, read through the metadata cache."""
        manager = self._partition_manager()
        return list(
            manager.partitions_for_table_name(
                self.model._meta.db_table,
                include_subpartitions=include_subpartitions,
            ),
        )

    def create_partition(
        self,
        *,
        start_range: Any = None,
        end_range: Any = None,
        values: Any = None,
        modulus: int | None = None,
        remainder: int | None = None,
        **options: Any,
    ) -> str:
        """Create and attach a partition of this model's table, returning its name.

        Pass ``start_range``/``end_range`` for range partitioned models,
        ``values`` for list and ``modulus``/``remainder`` for hash. Remaining
        options go to :meth:`PartitionManager.create_partition_of`.
        """
        partitioning = self._partitioning()
        manager = self._partition_manager()
        table_name = self.model._meta.db_table
        options.setdefault("primary_key", self._primary_key())

        with transaction.atomic(using=self._write_db()):
            match partitioning.partition_type:
                case PartitionType.RANGE:
                    if start_range is None or end_range is None:
                        msg = "create_partition() on a range partitioned model requires start_range and end_range"
                        raise PartitioningUsageError(msg)
                    return manager.create_range_partition_of(table_name, start_range, end_range, **options)
                case PartitionType.LIST:
                    if values is None:
                        raise MissingOptionError("values", "a list partition")
                    return manager.create_list_partition_of(table_name, values, **options)
                case _:
                    if modulus is None or remainder is None:
                        msg = "create_partition() on a hash partitioned model requires modulus and remainder"
                        raise PartitioningUsageError(msg)
                    return manager.create_hash_partition_of(table_name, modulus, remainder, **options)

    def create_default_partition(self, **options: Any) -> str:
        """Create the partition receiving rows no other partition accepts."""
        self._partitioning()
        manager = self._partition_manager()
        options.setdefault("primary_key", self._primary_key())
        with transaction.atomic(using=self._write_db()):
            return manager.create_default_partition_of(self.model._meta.db_table, **options)

    def _primary_key(self) -> str | tuple[str, ...]:
        pk = self.model._meta.pk
        if pk.column is None:
            return tuple(field.column for field in pk.fields)  # type: ignore[attr-defined]
        return pk.column

    apartitions = _async("partitions")
    acreate_partition = _async("create_partition")
    acreate_default_partition = _async("create_default_partition")


class PartitionedManager(models.Manager.from_queryset(PartitionedQuerySet)):  # type: ignore[misc]
    """Manager for models with a ``partitioning`` declaration."""

    def in_partition(self, child_table_name: str) -> PartitionedQuerySet:
        template = get_default_cache().fetch_model(
            self.model._meta.label,
            child_table_name,
            lambda: partition_query(self.model, child_table_name),
        )
        return self._queryset_class(model=self.model, query=template.chain(), using=self._db, hints=self._hints)

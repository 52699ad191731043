"""Exceptions for django-pgparty.

Usage faults derive from ``ValueError`` and version faults from
``NotImplementedError`` so callers that already guard on the builtin types keep
working. Errors raised by PostgreSQL itself (overlapping bounds, check
violations) are never wrapped and surface as Django ``DatabaseError`` subclasses.
"""

from __future__ import annotations


class PartitioningError(Exception):
    """Base class for every exception raised by django-pgparty."""


class PartitioningUsageError(PartitioningError, ValueError):
    """Raised when a partitioning operation is called with invalid arguments."""


class CompositePrimaryKeyError(PartitioningUsageError):
    """Raised when a composite primary key is given without ``create_with_primary_key``."""

    def __init__(self, primary_key: object = None) -> None:
        self.primary_key = primary_key
        super().__init__("composite primary key not supported")


class UnsupportedPartitionTypeError(PartitioningUsageError):
    """Raised for a partition strategy other than range, list or hash.

    Attributes:
        partition_type: The rejected strategy name.
    """

    def __init__(self, partition_type: object) -> None:
        self.partition_type = partition_type
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"Supported partition types are range, list, hash (got {self.partition_type!r})"


class MissingOptionError(PartitioningUsageError):
    """Raised when an option required by another option is absent."""

    def __init__(self, option: str, required_by: str) -> None:
        self.option = option
        self.required_by = required_by
        super().__init__(f"`{option}` is required when specifying `{required_by}`")


class IndexNameTooLongError(PartitioningUsageError):
    """Raised when an index name leaves no room for the per-partition suffix."""

    def __init__(self, index_name: str, limit: int) -> None:
        self.index_name = index_name
        self.limit = limit
        super().__init__(f"index name is too long - must be {limit} characters or fewer (got {index_name!r})")


class ThreadingError(PartitioningUsageError):
    """Raised when ``in_threads`` cannot be honoured safely."""


class PartitionVersionError(PartitioningError, NotImplementedError):
    """Raised when the PostgreSQL server is too old for the requested feature.

    Attributes:
        feature: Human readable name of the feature.
        required: Minimum server major version.
        actual: Server major version in use.

    Example:
        Falling back to list partitions on old servers::

            from django_pgparty.exceptions import PartitionVersionError

            try:
                manager.create_hash_partition("events", partition_key="id")
            except PartitionVersionError:
                manager.create_list_partition("events", partition_key="kind")
    """

    def __init__(self, feature: str, required: int, actual: int) -> None:
        self.feature = feature
        self.required = required
        self.actual = actual
        super().__init__(str(self))

    def __str__(self) -> str:
        return f"{self.feature} are only available in PostgreSQL {self.required} or higher (server is {self.actual})"


class InvalidIndexError(PartitioningError):
    """Raised when a concurrently built index ends up marked invalid.

    Attributes:
        index_names: Names of the indexes PostgreSQL reported as invalid.
    """

    def __init__(self, index_names: tuple[str, ...] = ()) -> None:
        self.index_names = index_names
        super().__init__("index creation failed - an index was marked invalid")

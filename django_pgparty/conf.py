"""Configuration for django-pgparty.

Settings live in a single ``PGPARTY`` dictionary in the Django settings module::

    PGPARTY = {
        "CACHING": True,
        "CACHING_TTL": 300,
        "CREATE_TEMPLATE_TABLES": True,
    }

:func:`get_config` turns that dictionary into an immutable
:class:`PartitioningConfig`. Managers take the config as a constructor
argument, so tests and multi-database setups can pass their own.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

SETTINGS_NAME = "PGPARTY"


@dataclass(frozen=True, slots=True)
class PartitioningConfig:
    """Options recognised by the partition manager and model helpers."""

    caching: bool = True
    caching_ttl: float = -1  # <= 0 never expires
    schema_exclude_partitions: bool = True
    create_template_tables: bool = True
    create_with_primary_key: bool = False
    include_subpartitions_in_partition_list: bool = False
    pool_size: int = 5  # used when DATABASES[alias]["OPTIONS"] has no "pool"
    database: str = "default"

    @classmethod
    def from_settings(cls, options: dict[str, Any] | None = None) -> PartitioningConfig:
        """Build a config from ``settings.PGPARTY`` (or the given dict).

        Keys are the upper-case field names. Unknown keys raise
        ``ImproperlyConfigured`` so typos do not silently fall back to defaults.
        """
        if options is None:
            options = getattr(settings, SETTINGS_NAME, None) or {}

        known = {f.name.upper(): f.name for f in fields(cls)}
        unknown = sorted(set(options) - set(known))
        if unknown:
            msg = f"Unknown {SETTINGS_NAME} option(s): {', '.join(unknown)}"
            raise ImproperlyConfigured(msg)

        kwargs = {known[key]: value for key, value in options.items()}
        config = cls(**kwargs)
        if config.pool_size < 1:
            msg = f"{SETTINGS_NAME}['POOL_SIZE'] must be a positive integer"
            raise ImproperlyConfigured(msg)
        return config


def get_config() -> PartitioningConfig:
    """Return the process default configuration from Django settings."""
    return PartitioningConfig.from_settings()

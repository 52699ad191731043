VERSION = (1, 0, 0)
__version__ = ".".join(map(str, VERSION))


def get_partition_manager(alias=None):
    """Helper used for obtaining a partition manager for a database alias.

    Uses the ``PGPARTY`` settings and the process-wide metadata cache.
    """
    from django_pgparty.cache import get_default_cache
    from django_pgparty.conf import get_config
    from django_pgparty.connection import DatabaseConnection
    from django_pgparty.manager import PartitionManager

    config = get_config()
    connection = DatabaseConnection.for_alias(alias or config.database)
    return PartitionManager(connection, config=config, cache=get_default_cache())

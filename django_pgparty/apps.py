"""Django app configuration for django-pgparty."""

from __future__ import annotations

from django.apps import AppConfig

from django_pgparty.conf import get_config


class PgPartyConfig(AppConfig):
    name = "django_pgparty"
    label = "pgparty"
    verbose_name = "Django PgParty"

    def ready(self) -> None:
        # Fail at startup on unknown or invalid PGPARTY options.
        get_config()

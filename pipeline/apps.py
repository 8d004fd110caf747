"""Application configuration for the pipeline app.

The configuration is intentionally lightweight so Django can start
without performing network access during ``ready()``.  Every remote call
lives in a service function that is invoked from a management command.
"""

from __future__ import annotations

from django.apps import AppConfig


class PipelineConfig(AppConfig):
    """Custom AppConfig for the pipeline application."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'pipeline'
    verbose_name = 'ODK form pipeline'

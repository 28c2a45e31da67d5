from django.apps import AppConfig


class IngestConfig(AppConfig):
    name = 'ingest'
    default_auto_field = 'django.db.models.BigAutoField'

    def ready(self):
        """Import signals when the app is ready"""
        import ingest.signals  # noqa: F401

from django.apps import AppConfig


class SamplingAppConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'sampling'
    verbose_name = 'Sampling'

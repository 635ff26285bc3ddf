from django.apps import AppConfig


class NovelsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "novels"
    verbose_name = "Novels and chapters"

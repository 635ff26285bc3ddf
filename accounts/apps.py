from django.apps import AppConfig


class AccountsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "accounts"
    verbose_name = "Accounts and coins"

    def ready(self) -> None:  # pragma: no cover - import side effect
        from . import signals  # noqa: F401

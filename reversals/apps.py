from django.apps import AppConfig


class ReversalsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "reversals"
    verbose_name = "Reversals & corrections"

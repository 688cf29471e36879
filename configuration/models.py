from django.core.cache import cache
from django.db import models

DEFAULTS = {
    "features": {
        "weather_enabled": False,
        "analytics_enabled": False,
    },
    "apis": {
        "aemet_api_key": "",
        "aemet_function_key": "",
    },
    "notifications": {
        "loan_email_enabled": False,
        "overdue_reminders_enabled": False,
        "due_soon_days": 3,
    },
    "loans": {
        "default_loan_days": 7,
    },
}


def cache_key(name):
    return f"configuration:{name}"


class ConfigurationDocument(models.Model):
    class Name(models.TextChoices):
        FEATURES = "features", "Feature flags"
        APIS = "apis", "Third-party API keys"
        NOTIFICATIONS = "notifications", "Notification settings"
        LOANS = "loans", "Loan management"

    name = models.CharField(max_length=64, unique=True, choices=Name.choices)
    data = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def values(self):
        """Stored values layered over the defaults for this document."""
        merged = dict(DEFAULTS.get(self.name, {}))
        merged.update(self.data or {})
        return merged

    def save(self, *args, **kwargs):
        super().save(*args, **kwargs)
        cache.delete(cache_key(self.name))

    def __str__(self):
        return self.get_name_display()

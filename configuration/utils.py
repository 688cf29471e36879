import logging

from django.core.cache import cache

from configuration.models import DEFAULTS, ConfigurationDocument, cache_key

CACHE_TIMEOUT = 60


def get_document(name):
    """
    Return the values of a configuration document as a plain dict.

    Missing documents are created with their defaults, so a fresh database
    behaves the same as one initialized by the data migration.
    """
    values = cache.get(cache_key(name))
    if values is not None:
        return values

    document, created = ConfigurationDocument.objects.get_or_create(
        name=name, defaults={"data": dict(DEFAULTS.get(name, {}))}
    )
    if created:
        logging.info(f"Initialized configuration document {name} with defaults")
    values = document.values()
    cache.set(cache_key(name), values, CACHE_TIMEOUT)
    return values


def get_setting(name, key, default=None):
    return get_document(name).get(key, default)


def feature_enabled(feature):
    return bool(get_setting("features", f"{feature}_enabled", False))


def get_api_key(key):
    """API keys are stored as strings; blank means not configured."""
    value = get_setting("apis", key, "")
    return value.strip() if isinstance(value, str) and value.strip() else None


def weather_available():
    """The weather panel needs both the feature flag and an AEMET key."""
    if not feature_enabled("weather"):
        return False
    if get_api_key("aemet_api_key") is None:
        logging.warning("Weather is enabled but no AEMET API key is configured")
        return False
    return True

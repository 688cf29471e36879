from django.test import TestCase

from configuration.models import ConfigurationDocument
from configuration.utils import (
    feature_enabled,
    get_api_key,
    get_document,
    get_setting,
    weather_available,
)


class ConfigurationDocumentTests(TestCase):
    def test_missing_document_is_created_with_defaults(self):
        self.assertFalse(ConfigurationDocument.objects.filter(name="loans").exists())
        self.assertEqual(get_setting("loans", "default_loan_days"), 7)
        self.assertTrue(ConfigurationDocument.objects.filter(name="loans").exists())

    def test_stored_values_override_defaults(self):
        ConfigurationDocument.objects.create(name="notifications", data={"due_soon_days": 5})
        values = get_document("notifications")
        self.assertEqual(values["due_soon_days"], 5)
        self.assertFalse(values["loan_email_enabled"])

    def test_blank_api_key_is_not_configured(self):
        ConfigurationDocument.objects.create(name="apis", data={"aemet_api_key": "   "})
        self.assertIsNone(get_api_key("aemet_api_key"))

    def test_weather_needs_flag_and_key(self):
        features = ConfigurationDocument.objects.create(
            name="features", data={"weather_enabled": True}
        )
        self.assertTrue(feature_enabled("weather"))
        with self.assertLogs(level="WARNING"):
            self.assertFalse(weather_available())

        # the failed check above already created the apis document with its defaults
        ConfigurationDocument.objects.update_or_create(
            name="apis", defaults={"data": {"aemet_api_key": "secret"}}
        )
        self.assertTrue(weather_available())

        features.data = {"weather_enabled": False}
        features.save()
        self.assertFalse(weather_available())

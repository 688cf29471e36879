from unittest.mock import MagicMock, patch

import requests
from django.contrib.auth.models import User
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from activities.models import Activity
from configuration.models import ConfigurationDocument
from weather.utils import AEMET_BASE_URL, AemetError, fetch_aemet


def _response(status_code=200, json_data=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data
    response.text = ""
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    else:
        response.raise_for_status.return_value = None
    return response


class FetchAemetTests(TestCase):
    @patch("weather.utils.requests.get")
    def test_follows_datos_url(self, mock_get):
        mock_get.side_effect = [
            _response(json_data={"estado": 200, "datos": "https://opendata.aemet.es/sh/abc"}),
            _response(json_data=[{"nombre": "Arredondo"}]),
        ]
        self.assertEqual(fetch_aemet("maestro/municipios", "key"), [{"nombre": "Arredondo"}])
        first_call = mock_get.call_args_list[0]
        self.assertEqual(first_call.args[0], f"{AEMET_BASE_URL}/maestro/municipios")
        self.assertEqual(first_call.kwargs["headers"]["api_key"], "key")
        self.assertEqual(mock_get.call_args_list[1].args[0], "https://opendata.aemet.es/sh/abc")

    @patch("weather.utils.requests.get")
    def test_response_without_datos_is_returned(self, mock_get):
        mock_get.return_value = _response(json_data={"estado": 404, "descripcion": "No data"})
        self.assertEqual(fetch_aemet("/valores/", "key")["estado"], 404)

    @patch("weather.utils.requests.get")
    def test_upstream_error_keeps_status(self, mock_get):
        mock_get.return_value = _response(401, {"descripcion": "API key invalid"})
        with self.assertRaises(AemetError) as ctx:
            fetch_aemet("maestro/municipios", "bad")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.as_json()["error"], {"descripcion": "API key invalid"})

    @patch("weather.utils.requests.get")
    def test_network_failure_is_a_server_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("unreachable")
        with self.assertRaises(AemetError) as ctx:
            fetch_aemet("maestro/municipios", "key")
        self.assertEqual(ctx.exception.status_code, 500)


class AemetProxyTests(TestCase):
    def setUp(self):
        self.url = reverse("aemet_proxy")

    def _configure(self, function_key="app-secret"):
        ConfigurationDocument.objects.create(
            name="apis", data={"aemet_function_key": function_key}
        )

    def test_app_key_required(self):
        self._configure()
        response = self.client.get(self.url)
        self.assertEqual(response.status_code, 403)

    def test_unconfigured_proxy(self):
        response = self.client.get(self.url, HTTP_X_APP_API_KEY="anything")
        self.assertEqual(response.status_code, 500)

    def test_invalid_app_key(self):
        self._configure()
        response = self.client.get(self.url, {"appApiKey": "wrong"})
        self.assertEqual(response.status_code, 403)

    def test_aemet_key_required(self):
        self._configure()
        response = self.client.get(self.url, HTTP_X_APP_API_KEY="app-secret")
        self.assertEqual(response.status_code, 400)

    def test_status_endpoint(self):
        self._configure()
        response = self.client.get(
            self.url,
            {"endpoint": "status", "aemetApiKey": "aemet"},
            HTTP_X_APP_API_KEY="app-secret",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "active")
        self.assertIn("timestamp", response.json())

    @patch("weather.views.fetch_aemet")
    def test_default_endpoint(self, mock_fetch):
        self._configure()
        mock_fetch.return_value = [{"id": "id39002"}]
        response = self.client.get(
            self.url, HTTP_X_APP_API_KEY="app-secret", HTTP_X_AEMET_API_KEY="aemet"
        )
        self.assertEqual(response.json(), [{"id": "id39002"}])
        mock_fetch.assert_called_once_with("maestro/municipios", "aemet")

    @patch("weather.views.fetch_aemet")
    def test_upstream_error(self, mock_fetch):
        self._configure()
        mock_fetch.side_effect = AemetError(429, "Too many requests")
        response = self.client.get(
            self.url,
            {"endpoint": "prediccion/especifica/municipio/diaria/39002"},
            HTTP_X_APP_API_KEY="app-secret",
            HTTP_X_AEMET_API_KEY="aemet",
        )
        self.assertEqual(response.status_code, 429)
        self.assertEqual(
            response.json(),
            {"error": "Too many requests", "message": "Error communicating with the AEMET API"},
        )


class WeatherPanelTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="espeleo")
        self.client.force_login(self.user)
        today = timezone.localdate()
        self.activity = Activity.objects.create(
            name="Cueva Fresca",
            place="Arredondo",
            types=["caving"],
            subtypes=["visit"],
            start_date=today,
            end_date=today,
            municipality_code="39002",
            creator=self.user,
        )
        ConfigurationDocument.objects.create(name="features", data={"weather_enabled": True})
        ConfigurationDocument.objects.create(name="apis", data={"aemet_api_key": "aemet"})

    def test_detail_shows_panel(self):
        response = self.client.get(self.activity.get_absolute_url())
        self.assertContains(response, 'id="weather"')

    @patch("activities.views.municipality_forecast")
    def test_panel_renders_forecast(self, mock_forecast):
        mock_forecast.return_value = [
            {
                "prediccion": {
                    "dia": [
                        {
                            "fecha": "2026-10-20T00:00:00",
                            "temperatura": {"minima": 8, "maxima": 17},
                            "estadoCielo": [{"descripcion": "Nubes altas"}],
                        }
                    ]
                }
            }
        ]
        response = self.client.get(reverse("activity_weather", args=[self.activity.pk]))
        self.assertContains(response, "Nubes altas")
        mock_forecast.assert_called_once_with("39002", "aemet")

    @patch("activities.views.municipality_forecast")
    def test_panel_failure_offers_retry(self, mock_forecast):
        mock_forecast.side_effect = AemetError(500, "down")
        response = self.client.get(reverse("activity_weather", args=[self.activity.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "Retry")

import logging

import requests

AEMET_BASE_URL = "https://opendata.aemet.es/opendata/api"
DEFAULT_ENDPOINT = "maestro/municipios"
TIMEOUT = 15


class AemetError(Exception):
    def __init__(self, status_code, error, message="Error communicating with the AEMET API"):
        self.status_code = status_code
        self.error = error
        self.message = message
        super().__init__(f"AEMET {status_code}: {error}")

    def as_json(self):
        return {"error": self.error, "message": self.message}


def _payload(response):
    try:
        return response.json()
    except ValueError:
        return response.text


def fetch_aemet(endpoint, api_key):
    """
    Call an AEMET OpenData endpoint.

    AEMET answers with an envelope whose ``datos`` field points at the
    actual data; when present it is fetched and returned instead.
    """
    endpoint = endpoint.strip("/")
    url = f"{AEMET_BASE_URL}/{endpoint}"
    logging.info(f"AEMET request: {endpoint}")
    try:
        response = requests.get(
            url, headers={"api_key": api_key, "Accept": "application/json"}, timeout=TIMEOUT
        )
        response.raise_for_status()
        data = _payload(response)

        if isinstance(data, dict) and data.get("datos"):
            logging.info(f"AEMET data fetched from {data['datos']}")
            data_response = requests.get(data["datos"], timeout=TIMEOUT)
            data_response.raise_for_status()
            return _payload(data_response)
    except requests.HTTPError as e:
        logging.warning(f"AEMET returned {e.response.status_code} for {endpoint}")
        raise AemetError(e.response.status_code, _payload(e.response)) from e
    except requests.RequestException as e:
        logging.exception(f"AEMET request for {endpoint} failed")
        raise AemetError(500, str(e)) from e
    return data


def municipality_forecast(municipality_code, api_key):
    return fetch_aemet(f"prediccion/especifica/municipio/diaria/{municipality_code}", api_key)

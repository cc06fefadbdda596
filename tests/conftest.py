from __future__ import annotations

import pytest

from weatherdesk.providers.base import FetchOptions
from weatherdesk.providers.openweather import OpenWeatherClient
from weatherdesk.storage import PersistenceStore


GEO_URL = "https://owm.test/geo/1.0/direct"
CURRENT_URL = "https://owm.test/data/2.5/weather"
FORECAST_URL = "https://owm.test/data/2.5/forecast"


@pytest.fixture
def options() -> FetchOptions:
    return FetchOptions(api_key="test-key", units="metric", language="en")


@pytest.fixture
def client() -> OpenWeatherClient:
    return OpenWeatherClient(geocoding_url=GEO_URL, current_url=CURRENT_URL, forecast_url=FORECAST_URL)


@pytest.fixture
def store(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'weather.db'}"
    store = PersistenceStore(db_url)
    yield store
    store.close()

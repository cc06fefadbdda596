from __future__ import annotations

import time
from datetime import timezone

import pytest

from weatherdesk.entities import PlaceRecord, WeatherReading, compass_point


@pytest.mark.parametrize(
    "degrees, expected",
    [
        (0, "N"),
        (45, "NE"),
        (90, "E"),
        (135, "SE"),
        (180, "S"),
        (225, "SW"),
        (270, "W"),
        (315, "NW"),
        (337.5, "N"),
        (359.9, "N"),
        (360, "N"),
        (22.4, "N"),
        (22.5, "NE"),
        (67.5, "E"),
        (292.5, "NW"),
        (-90, "W"),
    ],
)
def test_compass_point_boundaries(degrees, expected):
    assert compass_point(degrees) == expected


def test_place_display_helpers():
    place = PlaceRecord(name="Portland", latitude=45.52, longitude=-122.68, country="US", region="Oregon")
    plain = PlaceRecord(name="Paris", latitude=48.8566, longitude=2.3522, country="FR")

    assert place.display_name == "Portland (Oregon, US)"
    assert str(place) == "Portland, Oregon, US"
    assert plain.display_name == "Paris (FR)"
    assert str(plain) == "Paris, FR"
    assert plain.key == ("Paris", 48.8566, 2.3522)
    assert not plain.is_persisted
    assert plain.with_id(7).is_persisted


@pytest.mark.parametrize("lat, lon", [(90.5, 0.0), (-91.0, 0.0), (0.0, 180.1), (0.0, -181.0)])
def test_place_rejects_out_of_range_coordinates(lat, lon):
    with pytest.raises(ValueError):
        PlaceRecord(name="Nowhere", latitude=lat, longitude=lon)


def test_reading_formatting():
    reading = WeatherReading(
        temperature=20.54,
        feels_like=-3.0,
        wind_speed=5.2,
        wind_deg=200,
        icon_code="10n",
        observed_at=0,
        sunrise=3 * 3600,
        sunset=20 * 3600 + 15 * 60,
    )

    assert reading.formatted_temperature == "20.5°C"
    assert reading.formatted_feels_like == "-3.0°C"
    assert reading.formatted_wind_speed == "5.2 m/s"
    assert reading.wind_direction == "S"
    assert reading.icon_url == "https://openweathermap.org/img/wn/10n@2x.png"
    assert reading.formatted_date(timezone.utc) == "01.01.1970 00:00"
    assert reading.formatted_sunrise(timezone.utc) == "03:00"
    assert reading.formatted_sunset(timezone.utc) == "20:15"


def test_reading_units_suffix():
    assert WeatherReading(temperature=70.0, wind_speed=3.0, units="imperial").formatted_wind_speed == "3.0 mph"
    assert WeatherReading(temperature=293.0, units="standard").formatted_temperature == "293.0K"


def test_placeholder_reading_is_stamped_now():
    before = int(time.time())
    reading = WeatherReading()
    after = int(time.time())

    assert before <= reading.observed_at <= after

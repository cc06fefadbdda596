from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, tzinfo
from typing import Optional, Tuple


COMPASS_POINTS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")

_TEMPERATURE_SUFFIX = {"metric": "°C", "imperial": "°F", "standard": "K"}
_SPEED_SUFFIX = {"metric": "m/s", "imperial": "mph", "standard": "m/s"}


def compass_point(degrees: float) -> str:
    """Map a wind bearing to one of eight compass points.

    Each point covers a 45 degree sector centred on its bearing, so
    337.5-360 and 0-22.5 both map to ``N``.
    """

    bearing = float(degrees) % 360.0
    index = int((bearing + 22.5) // 45.0) % len(COMPASS_POINTS)
    return COMPASS_POINTS[index]


@dataclass(frozen=True)
class PlaceRecord:
    """A resolved geographic point.

    ``id`` is 0 for transient records built from a geocoding result and
    becomes the store id once the place is persisted. Identity is the
    ``(name, latitude, longitude)`` key, never the display string.
    """

    name: str
    latitude: float
    longitude: float
    country: Optional[str] = None
    region: Optional[str] = None
    id: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("place name must not be empty")
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")

    @property
    def key(self) -> Tuple[str, float, float]:
        return (self.name, self.latitude, self.longitude)

    @property
    def is_persisted(self) -> bool:
        return self.id > 0

    @property
    def display_name(self) -> str:
        country = self.country or ""
        if self.region:
            return f"{self.name} ({self.region}, {country})"
        return f"{self.name} ({country})"

    def with_id(self, place_id: int) -> "PlaceRecord":
        return replace(self, id=place_id)

    def __str__(self) -> str:
        parts = [self.name]
        if self.region:
            parts.append(self.region)
        if self.country:
            parts.append(self.country)
        return ", ".join(parts)


@dataclass(frozen=True)
class WeatherReading:
    """Point-in-time weather snapshot for a single place.

    Units follow the ``units`` system the reading was requested in. A reading
    built without ``observed_at`` is a placeholder stamped with the current
    time; readings parsed from the provider always carry the provider's
    own ``dt``.
    """

    temperature: float = 0.0
    feels_like: float = 0.0
    temp_min: float = 0.0
    temp_max: float = 0.0
    humidity: int = 0
    pressure: int = 0
    wind_speed: float = 0.0
    wind_deg: int = 0
    description: str = ""
    icon_code: str = ""
    cloudiness: int = 0
    visibility: int = 0
    sunrise: int = 0
    sunset: int = 0
    observed_at: int = field(default_factory=lambda: int(time.time()))
    units: str = "metric"

    # Formatting helpers -------------------------------------------------
    @property
    def wind_direction(self) -> str:
        return compass_point(self.wind_deg)

    @property
    def formatted_temperature(self) -> str:
        return self._format_temperature(self.temperature)

    @property
    def formatted_feels_like(self) -> str:
        return self._format_temperature(self.feels_like)

    @property
    def formatted_wind_speed(self) -> str:
        suffix = _SPEED_SUFFIX.get(self.units, "m/s")
        return f"{self.wind_speed:.1f} {suffix}"

    @property
    def icon_url(self) -> str:
        return f"https://openweathermap.org/img/wn/{self.icon_code}@2x.png"

    def observed_datetime(self, tz: Optional[tzinfo] = None) -> datetime:
        return datetime.fromtimestamp(self.observed_at, tz=tz)

    def formatted_date(self, tz: Optional[tzinfo] = None) -> str:
        return self.observed_datetime(tz).strftime("%d.%m.%Y %H:%M")

    def formatted_sunrise(self, tz: Optional[tzinfo] = None) -> str:
        return datetime.fromtimestamp(self.sunrise, tz=tz).strftime("%H:%M")

    def formatted_sunset(self, tz: Optional[tzinfo] = None) -> str:
        return datetime.fromtimestamp(self.sunset, tz=tz).strftime("%H:%M")

    def _format_temperature(self, value: float) -> str:
        suffix = _TEMPERATURE_SUFFIX.get(self.units, "°C")
        return f"{value:.1f}{suffix}"

    def __str__(self) -> str:
        return f"{self.formatted_temperature}, {self.description}"


__all__ = ["COMPASS_POINTS", "PlaceRecord", "WeatherReading", "compass_point"]

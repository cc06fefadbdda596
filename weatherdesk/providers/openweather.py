"""OpenWeather geocoding, current conditions and forecast client."""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from pydantic import ValidationError

from .base import (
    CredentialMissing,
    FetchOptions,
    HttpProvider,
    MalformedResponse,
    PlaceNotFound,
    ProviderError,
    ResolutionFailure,
)
from .schemas import CurrentPayload, ForecastPayload, ForecastSample, GeocodingEntry
from ..entities import PlaceRecord, WeatherReading


# The forecast endpoint returns one sample every 3 hours, i.e. eight per day.
# Taking every eighth sample keeps one reading per calendar day at roughly the
# same time of day as the first sample.
FORECAST_STRIDE = 8
DEFAULT_RESULT_LIMIT = 5


class OpenWeatherClient(HttpProvider):
    """Stateless OpenWeather client.

    Units, language and the credential arrive with every call through
    :class:`FetchOptions`; the instance itself only holds the HTTP session,
    endpoint URLs and timeouts, so a single client can be shared between
    worker threads.
    """

    geocoding_url = "https://api.openweathermap.org/geo/1.0/direct"
    current_url = "https://api.openweathermap.org/data/2.5/weather"
    forecast_url = "https://api.openweathermap.org/data/2.5/forecast"

    def __init__(
        self,
        *,
        geocoding_url: Optional[str] = None,
        current_url: Optional[str] = None,
        forecast_url: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.geocoding_url = geocoding_url or self.geocoding_url
        self.current_url = current_url or self.current_url
        self.forecast_url = forecast_url or self.forecast_url
        self._log = logging.getLogger(self.__class__.__name__)

    # Public API ---------------------------------------------------------
    def resolve(self, query: str, options: FetchOptions, *, limit: int = DEFAULT_RESULT_LIMIT) -> List[PlaceRecord]:
        """Return candidate places for ``query``; an empty list means no match."""
        query = (query or "").strip()
        if not query:
            raise ValueError("query must not be empty")
        params = {"q": query, "limit": limit, "appid": options.require_key()}
        try:
            response = self._request("GET", self.geocoding_url, params=params)
            entries = self._parse_geocoding(response)
        except CredentialMissing:
            raise
        except ProviderError as exc:
            raise ResolutionFailure(query, exc) from exc

        places = [
            PlaceRecord(
                name=entry.name,
                latitude=entry.lat,
                longitude=entry.lon,
                country=entry.country,
                region=entry.state,
            )
            for entry in entries
        ]
        self._log.info("Resolved %r to %d place(s)", query, len(places))
        return places

    def current_reading(self, place: Optional[PlaceRecord], options: FetchOptions) -> WeatherReading:
        if place is None:
            raise PlaceNotFound("")
        params = self._coordinates(place, options)
        try:
            response = self._request("GET", self.current_url, params=params)
        except PlaceNotFound as exc:
            raise PlaceNotFound(place.name, status=exc.status, body=exc.body) from exc
        data = self._json(response)
        try:
            payload = CurrentPayload.model_validate(data)
        except ValidationError as exc:
            self._log.error("Invalid current weather payload for %s", place.name, exc_info=exc)
            raise MalformedResponse("invalid current weather payload", body=response.text) from exc
        reading = self._build_reading(payload, options.units, sunrise=payload.sys.sunrise, sunset=payload.sys.sunset)
        self._log.info("Current weather for %s: %s", place.name, reading.formatted_temperature)
        return reading

    def forecast(self, place: Optional[PlaceRecord], days: int, options: FetchOptions) -> List[WeatherReading]:
        """Return at most ``days`` readings, one per day, oldest first."""
        if place is None:
            raise PlaceNotFound("")
        if days <= 0:
            return []
        params = self._coordinates(place, options)
        params["cnt"] = days * FORECAST_STRIDE
        try:
            response = self._request("GET", self.forecast_url, params=params)
        except PlaceNotFound as exc:
            raise PlaceNotFound(place.name, status=exc.status, body=exc.body) from exc
        data = self._json(response)
        try:
            payload = ForecastPayload.model_validate(data)
        except ValidationError as exc:
            self._log.error("Invalid forecast payload for %s", place.name, exc_info=exc)
            raise MalformedResponse("invalid forecast payload", body=response.text) from exc
        daily = downsample(payload.samples, days)
        result = [self._build_reading(sample, options.units) for sample in daily]
        self._log.info("Forecast for %s: %d day(s)", place.name, len(result))
        return result

    # helpers ------------------------------------------------------------
    def _parse_geocoding(self, response) -> List[GeocodingEntry]:
        data = self._json(response)
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedResponse("geocoding response is not a list", body=response.text)
        try:
            return [GeocodingEntry.model_validate(item) for item in data]
        except ValidationError as exc:
            self._log.error("Invalid geocoding payload", exc_info=exc)
            raise MalformedResponse("invalid geocoding payload", body=response.text) from exc

    def _coordinates(self, place: PlaceRecord, options: FetchOptions) -> dict:
        return {
            "lat": place.latitude,
            "lon": place.longitude,
            "appid": options.require_key(),
            "units": options.units,
            "lang": options.language,
        }

    def _build_reading(self, sample: ForecastSample, units: str, *, sunrise: int = 0, sunset: int = 0) -> WeatherReading:
        main = sample.main
        condition = sample.condition
        return WeatherReading(
            temperature=main.temp,
            feels_like=main.feels_like,
            temp_min=main.temp_min,
            temp_max=main.temp_max,
            humidity=main.humidity,
            pressure=int(round(main.pressure)),
            wind_speed=sample.wind.speed,
            wind_deg=int(round(sample.wind.deg)),
            description=condition.description,
            icon_code=condition.icon,
            cloudiness=sample.clouds.all,
            visibility=sample.visibility,
            sunrise=sunrise,
            sunset=sunset,
            observed_at=sample.dt,
            units=units,
        )


def downsample(samples: Sequence[ForecastSample], days: int, stride: int = FORECAST_STRIDE) -> List[ForecastSample]:
    return list(samples[::stride][:days])


__all__ = ["DEFAULT_RESULT_LIMIT", "FORECAST_STRIDE", "OpenWeatherClient", "downsample"]

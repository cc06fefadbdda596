"""Pydantic schemas validating OpenWeather payloads before normalisation."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GeocodingEntry(_Lenient):
    name: str = Field(..., min_length=1)
    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)
    country: Optional[str] = Field(default=None)
    state: Optional[str] = Field(default=None)


class MainBlock(_Lenient):
    temp: float
    feels_like: Optional[float] = None
    temp_min: Optional[float] = None
    temp_max: Optional[float] = None
    pressure: float = 0.0
    humidity: int = Field(default=0, ge=0, le=100)

    @model_validator(mode="after")
    def _fill_from_temp(self) -> "MainBlock":
        # Providers occasionally omit the derived temperatures.
        if self.feels_like is None:
            self.feels_like = self.temp
        if self.temp_min is None:
            self.temp_min = self.temp
        if self.temp_max is None:
            self.temp_max = self.temp
        return self


class WindBlock(_Lenient):
    speed: float = 0.0
    deg: float = 0.0


class ConditionBlock(_Lenient):
    description: str = ""
    icon: str = ""


class CloudsBlock(_Lenient):
    all: int = 0


class SysBlock(_Lenient):
    sunrise: int = 0
    sunset: int = 0


class CoordBlock(_Lenient):
    lat: float
    lon: float


class ForecastSample(_Lenient):
    dt: int
    main: MainBlock
    weather: List[ConditionBlock] = Field(..., min_length=1)
    wind: WindBlock = Field(default_factory=WindBlock)
    clouds: CloudsBlock = Field(default_factory=CloudsBlock)
    visibility: int = 0

    @property
    def condition(self) -> ConditionBlock:
        return self.weather[0]


class CurrentPayload(ForecastSample):
    coord: Optional[CoordBlock] = None
    sys: SysBlock = Field(default_factory=SysBlock)
    name: Optional[str] = None


class ForecastPayload(_Lenient):
    samples: List[ForecastSample] = Field(default_factory=list, alias="list")


__all__ = [
    "ConditionBlock",
    "CurrentPayload",
    "ForecastPayload",
    "ForecastSample",
    "GeocodingEntry",
]

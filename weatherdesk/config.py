"""Pipeline settings and their loading from the environment.

Core components never read the environment themselves: the command-line
front end calls :func:`load_settings` once and passes the resulting
:class:`PipelineSettings` down explicitly.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .providers.base import FetchOptions
from .storage import DEFAULT_DATABASE_URL

logger = logging.getLogger(__name__)

ENV_PREFIX = "WEATHERDESK_"


class ImproperlyConfigured(RuntimeError):
    """Raised when a required setting is missing."""


@dataclass(frozen=True)
class PipelineSettings:
    api_key: Optional[str] = None
    units: str = "metric"
    language: str = "en"
    default_place: str = "Moscow"
    cache_ttl_minutes: int = 30
    retry_count: int = 3
    retry_backoff: float = 0.5
    forecast_days: int = 4
    suggestion_limit: int = 5
    min_query_length: int = 2
    database_url: str = DEFAULT_DATABASE_URL

    def fetch_options(self) -> FetchOptions:
        return FetchOptions(api_key=self.api_key, units=self.units, language=self.language)


def env(name: str, default: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> str:
    """Fetch a prefixed environment variable while allowing explicit defaults."""

    source = os.environ if environ is None else environ
    value = source.get(ENV_PREFIX + name, default)
    if value is None:
        raise ImproperlyConfigured(f"Environment variable {ENV_PREFIX}{name} is required")
    return value


def _env_int(name: str, default: int, environ: Optional[Mapping[str, str]]) -> int:
    raw = env(name, str(default), environ)
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s%s=%r, using %s", ENV_PREFIX, name, raw, default)
        return default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> PipelineSettings:
    defaults = PipelineSettings()
    api_key = env("API_KEY", "", environ).strip() or None
    if api_key is None:
        logger.error("API key is not configured (%sAPI_KEY)", ENV_PREFIX)
    return PipelineSettings(
        api_key=api_key,
        units=env("UNITS", defaults.units, environ),
        language=env("LANG", defaults.language, environ),
        default_place=env("DEFAULT_PLACE", defaults.default_place, environ),
        cache_ttl_minutes=_env_int("CACHE_TTL_MINUTES", defaults.cache_ttl_minutes, environ),
        retry_count=_env_int("RETRY_COUNT", defaults.retry_count, environ),
        database_url=env("DB_URL", defaults.database_url, environ),
    )


__all__ = ["ENV_PREFIX", "ImproperlyConfigured", "PipelineSettings", "env", "load_settings"]

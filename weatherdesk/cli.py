"""Command-line front end for the weather pipeline."""
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, replace
from typing import Callable, List, Mapping, Optional, TextIO

import requests

from .config import PipelineSettings, load_settings
from .entities import PlaceRecord, WeatherReading
from .providers.base import (
    CredentialMissing,
    MalformedResponse,
    PlaceNotFound,
    ResolutionFailure,
    TransientProviderError,
)
from .providers.openweather import OpenWeatherClient
from .services.orchestrator import FetchOrchestrator, Handler, Outcome, WeatherReport
from .storage import PersistenceStore, StorageError

logger = logging.getLogger(__name__)

WAIT_TIMEOUT = 60.0


class CommandError(Exception):
    """Raised for failures that should be reported to the user and end the command."""


def describe_error(error: BaseException) -> str:
    """Human-readable message for a pipeline failure."""

    if isinstance(error, ResolutionFailure):
        error = error.cause
    if isinstance(error, CredentialMissing):
        return "The weather API key is missing or was rejected. Set WEATHERDESK_API_KEY."
    if isinstance(error, PlaceNotFound):
        if error.query:
            return f"Place '{error.query}' was not found. Check the spelling."
        return "Place was not found. Check the spelling."
    if isinstance(error, MalformedResponse):
        return "The weather service returned an unexpected response."
    if isinstance(error, TransientProviderError):
        return "The weather service is unavailable right now. Try again later."
    if isinstance(error, StorageError):
        return f"Local database error: {error}"
    return f"Weather request failed: {error}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="weatherdesk", description="Current weather and outlook for a place")
    parser.add_argument("--db", help="Database URL (sqlite:///path)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    search = subparsers.add_parser("search", help="List places matching a query")
    search.add_argument("query")

    weather = subparsers.add_parser("weather", help="Show current weather and forecast")
    weather.add_argument("query", nargs="?", help="Place name; defaults to the last selected place")
    weather.add_argument("--days", type=int, help="Forecast length in days")
    weather.add_argument("--no-forecast", action="store_true", help="Skip the multi-day outlook")
    weather.add_argument("--json", action="store_true", help="Print the current reading as JSON")

    history = subparsers.add_parser("history", help="Show saved readings for a place")
    history.add_argument("query")
    history.add_argument("--limit", type=int, default=10)

    recent = subparsers.add_parser("recent", help="Show recently selected places")
    recent.add_argument("--limit", type=int, default=10)
    return parser


def main(
    argv: Optional[List[str]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    session: Optional[requests.Session] = None,
    stdout: Optional[TextIO] = None,
    stderr: Optional[TextIO] = None,
) -> int:
    args = build_parser().parse_args(argv)
    out = stdout or sys.stdout
    err = stderr or sys.stderr
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    settings = load_settings(environ)
    if args.db:
        settings = replace(settings, database_url=args.db)

    try:
        store = PersistenceStore(settings.database_url)
    except StorageError as exc:
        err.write(describe_error(exc) + "\n")
        return 1

    client = OpenWeatherClient(session=session)
    try:
        with FetchOrchestrator(client, store, settings) as orchestrator:
            command = _COMMANDS[args.command]
            command(orchestrator, settings, args, out, err)
    except CommandError as exc:
        err.write(f"{exc}\n")
        return 1
    finally:
        store.close()
    return 0


# -- Commands ---------------------------------------------------------------

def _search(orchestrator: FetchOrchestrator, settings: PipelineSettings, args, out: TextIO, err: TextIO) -> None:
    query = args.query.strip()
    if len(query) < settings.min_query_length:
        raise CommandError(f"Query must be at least {settings.min_query_length} characters long")
    outcome = _await(orchestrator, lambda done: orchestrator.search_places(query, done))
    if not outcome.value:
        out.write("No matches\n")
        return
    for place in outcome.value:
        out.write(f"{place.display_name}\t{place.latitude:.4f},{place.longitude:.4f}\n")


def _weather(orchestrator: FetchOrchestrator, settings: PipelineSettings, args, out: TextIO, err: TextIO) -> None:
    if args.query:
        outcome = _await(orchestrator, lambda done: orchestrator.load_weather(args.query, done))
    else:
        outcome = _await(orchestrator, orchestrator.load_last_place)
        if outcome.ok and outcome.value is None:
            outcome = _await(orchestrator, lambda done: orchestrator.load_weather(settings.default_place, done))
    report: WeatherReport = _unwrap(outcome)
    if report.storage_error is not None:
        err.write(f"Warning: weather was not saved ({describe_error(report.storage_error)})\n")

    if args.json:
        payload = asdict(report.reading)
        payload["place"] = asdict(report.place)
        payload["wind_direction"] = report.reading.wind_direction
        out.write(json.dumps(payload, ensure_ascii=False) + "\n")
    else:
        _print_report(report, out)

    if args.no_forecast:
        return
    forecast = _await(orchestrator, lambda done: orchestrator.load_forecast(report.place, args.days, done))
    if not forecast.ok:
        err.write(f"Forecast unavailable: {describe_error(forecast.error)}\n")
        return
    if args.json:
        return
    if not forecast.value:
        out.write("No forecast available\n")
        return
    for day in forecast.value:
        out.write(f"  {day.observed_datetime().strftime('%a %d.%m')}  {day.formatted_temperature:>8}  {day.description}\n")


def _history(orchestrator: FetchOrchestrator, settings: PipelineSettings, args, out: TextIO, err: TextIO) -> None:
    place: PlaceRecord = _unwrap(_await(orchestrator, lambda done: orchestrator.resolve_place(args.query, done)))
    readings = _unwrap(_await(orchestrator, lambda done: orchestrator.load_history(place, args.limit, done)))
    if not readings:
        out.write(f"No saved readings for {place.display_name}\n")
        return
    for reading in readings:
        out.write(f"{reading.formatted_date()}  {reading.formatted_temperature:>8}  {reading.description}\n")


def _recent(orchestrator: FetchOrchestrator, settings: PipelineSettings, args, out: TextIO, err: TextIO) -> None:
    places = _unwrap(_await(orchestrator, lambda done: orchestrator.load_recent_places(args.limit, done)))
    if not places:
        out.write("No saved places\n")
        return
    for place in places:
        out.write(f"{place.display_name}\n")


_COMMANDS = {
    "search": _search,
    "weather": _weather,
    "history": _history,
    "recent": _recent,
}


# -- Helpers ----------------------------------------------------------------

def _await(orchestrator: FetchOrchestrator, submit: Callable[[Handler], int], timeout: float = WAIT_TIMEOUT) -> Outcome:
    results: List[Outcome] = []
    submit(results.append)
    deadline = time.monotonic() + timeout
    while not results:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CommandError("Timed out waiting for the weather service")
        orchestrator.process_pending(timeout=min(remaining, 0.2))
    return results[0]


def _unwrap(outcome: Outcome):
    if outcome.error is not None:
        raise CommandError(describe_error(outcome.error))
    return outcome.value


def _print_report(report: WeatherReport, out: TextIO) -> None:
    reading: WeatherReading = report.reading
    source = " (cached)" if report.from_cache else ""
    out.write(f"{report.place.display_name}{source}\n")
    out.write(f"  {reading.formatted_temperature}, {reading.description}\n")
    out.write(f"  Feels like {reading.formatted_feels_like}\n")
    out.write(f"  Wind {reading.formatted_wind_speed} {reading.wind_direction}\n")
    out.write(f"  Humidity {reading.humidity}%  Pressure {reading.pressure} hPa\n")
    out.write(f"  Observed {reading.formatted_date()}\n")


__all__ = ["CommandError", "build_parser", "describe_error", "main"]

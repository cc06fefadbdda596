from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from ..config import PipelineSettings
from ..entities import PlaceRecord, WeatherReading
from ..providers.base import PlaceNotFound, ProviderError
from ..providers.openweather import OpenWeatherClient
from ..storage import PersistenceStore, StorageError


SUGGESTIONS = "suggestions"
RESOLVE = "resolve"
WEATHER = "weather"
FORECAST = "forecast"
HISTORY = "history"
RECENT = "recent"

T = TypeVar("T")
Target = Union[str, PlaceRecord]


@dataclass(frozen=True)
class WeatherReport:
    """Result of a successful ``load_weather``.

    ``storage_error`` is set when the reading was fetched but could not be
    saved; the reading is still valid and should be shown.
    """

    place: PlaceRecord
    reading: WeatherReading
    from_cache: bool = False
    storage_error: Optional[StorageError] = None


@dataclass(frozen=True)
class Outcome:
    target: str
    sequence: int
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


Handler = Callable[[Outcome], None]


class RequestSequencer:
    """Monotonic request counters, one per logical target."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = {}
        self._lock = threading.Lock()

    def next(self, target: str) -> int:
        with self._lock:
            value = self._counters.get(target, 0) + 1
            self._counters[target] = value
            return value

    def current(self, target: str) -> int:
        with self._lock:
            return self._counters.get(target, 0)

    def is_current(self, target: str, sequence: int) -> bool:
        return self.current(target) == sequence


class FetchOrchestrator:
    """Runs resolve/fetch/persist pipelines on worker threads.

    Every public operation returns immediately with its request sequence
    number. Completions are posted to a message channel and handed to the
    caller's handler from :meth:`process_pending`, on whichever thread calls
    it. A completion whose sequence number has been superseded for the same
    target is dropped there, so the newest request always wins regardless
    of completion order. Work that is superseded before a worker picks it
    up is skipped entirely.
    """

    def __init__(
        self,
        client: OpenWeatherClient,
        store: PersistenceStore,
        settings: PipelineSettings,
        *,
        executor: Optional[Executor] = None,
        dispatch: Optional[Callable[[Callable[[], None]], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings
        self._options = settings.fetch_options()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="weatherdesk")
        self._channel: "queue.Queue[Callable[[], None]]" = queue.Queue()
        self._dispatch = dispatch or self._channel.put
        self._sequencer = RequestSequencer()
        self._sleep = sleep
        self._clock = clock
        self._log = logging.getLogger(self.__class__.__name__)

    # Public API ---------------------------------------------------------
    def search_places(self, query: str, on_done: Handler) -> int:
        """Autocomplete lookup; failures are reported as an empty list."""
        sequence = self._sequencer.next(SUGGESTIONS)
        self._submit(SUGGESTIONS, sequence, partial(self._search, query), on_done)
        return sequence

    def resolve_place(self, query: str, on_done: Handler) -> int:
        """Resolve ``query`` to its best candidate; failures arrive as typed errors."""
        sequence = self._sequencer.next(RESOLVE)
        self._submit(RESOLVE, sequence, partial(self._resolve_target, query), on_done)
        return sequence

    def load_weather(self, target: Target, on_done: Handler) -> int:
        """Resolve (for text), fetch current conditions and persist them."""
        sequence = self._sequencer.next(WEATHER)
        self._submit(WEATHER, sequence, partial(self._load_weather, target, sequence), on_done)
        return sequence

    def load_forecast(self, place: PlaceRecord, days: Optional[int], on_done: Handler) -> int:
        days = self.settings.forecast_days if days is None else days
        sequence = self._sequencer.next(FORECAST)
        work = partial(self._with_retry, lambda: self.client.forecast(place, days, self._options))
        self._submit(FORECAST, sequence, work, on_done)
        return sequence

    def load_last_place(self, on_done: Handler) -> int:
        """Reload the most recently selected place; ``None`` when there is none."""
        sequence = self._sequencer.next(WEATHER)
        self._submit(WEATHER, sequence, partial(self._load_last_place, sequence), on_done)
        return sequence

    def load_history(self, place: PlaceRecord, limit: int, on_done: Handler) -> int:
        sequence = self._sequencer.next(HISTORY)
        self._submit(HISTORY, sequence, partial(self.store.history, place, limit), on_done)
        return sequence

    def load_recent_places(self, limit: int, on_done: Handler) -> int:
        sequence = self._sequencer.next(RECENT)
        self._submit(RECENT, sequence, partial(self.store.recent_places, limit), on_done)
        return sequence

    def process_pending(self, timeout: float = 0.0) -> int:
        """Deliver queued completions on the calling thread.

        Waits up to ``timeout`` seconds for the first completion, then drains
        whatever else is queued without blocking. Returns the number of
        completions taken off the channel, stale ones included.
        """
        processed = 0
        try:
            callback = self._channel.get(timeout=timeout) if timeout > 0 else self._channel.get_nowait()
        except queue.Empty:
            return 0
        while True:
            callback()
            processed += 1
            try:
                callback = self._channel.get_nowait()
            except queue.Empty:
                return processed

    def is_current(self, target: str, sequence: int) -> bool:
        return self._sequencer.is_current(target, sequence)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def __enter__(self) -> "FetchOrchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # Pipelines ----------------------------------------------------------
    def _search(self, query: str) -> List[PlaceRecord]:
        try:
            return self._with_retry(
                lambda: self.client.resolve(query, self._options, limit=self.settings.suggestion_limit)
            )
        except (ProviderError, ValueError) as exc:
            self._log.debug("Suggestions for %r unavailable: %s", query, exc)
            return []

    def _load_weather(self, target: Target, sequence: int) -> WeatherReport:
        place = self._resolve_target(target)
        reading = self._cached_reading(place)
        from_cache = reading is not None
        if reading is None:
            reading = self._with_retry(lambda: self.client.current_reading(place, self._options))
        if not self._sequencer.is_current(WEATHER, sequence):
            self._log.debug("Weather request #%d superseded, not persisting %s", sequence, place.name)
            return WeatherReport(place=place, reading=reading, from_cache=from_cache)
        stored, storage_error = self._persist(place, reading, record=not from_cache)
        return WeatherReport(place=stored, reading=reading, from_cache=from_cache, storage_error=storage_error)

    def _load_last_place(self, sequence: int) -> Optional[WeatherReport]:
        place = self.store.last_selected_place()
        if place is None:
            self._log.info("No saved place to restore")
            return None
        return self._load_weather(place, sequence)

    # Helpers ------------------------------------------------------------
    def _resolve_target(self, target: Target) -> PlaceRecord:
        if isinstance(target, PlaceRecord):
            return target
        query = (target or "").strip()
        if not query:
            raise PlaceNotFound(query)
        candidates = self._with_retry(
            lambda: self.client.resolve(query, self._options, limit=self.settings.suggestion_limit)
        )
        if not candidates:
            raise PlaceNotFound(query)
        return candidates[0]

    def _cached_reading(self, place: PlaceRecord) -> Optional[WeatherReading]:
        ttl_seconds = self.settings.cache_ttl_minutes * 60
        if ttl_seconds <= 0:
            return None
        try:
            latest = self.store.history(place, 1)
        except StorageError as exc:
            self._log.warning("History lookup for %s failed: %s", place.name, exc)
            return None
        if not latest:
            return None
        reading = latest[0]
        if reading.units != self._options.units:
            return None
        if self._clock() - reading.observed_at > ttl_seconds:
            return None
        self._log.info("Serving cached reading for %s", place.name)
        return reading

    def _persist(
        self, place: PlaceRecord, reading: WeatherReading, *, record: bool
    ) -> Tuple[PlaceRecord, Optional[StorageError]]:
        try:
            stored = self.store.upsert_place(place)
            if record:
                self.store.record_reading(stored, reading)
        except StorageError as exc:
            self._log.warning("Could not save weather for %s: %s", place.name, exc)
            return place, exc
        return stored, None

    def _with_retry(self, call: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return call()
            except ProviderError as exc:
                if not exc.retryable or attempt >= self.settings.retry_count:
                    raise
                delay = self.settings.retry_backoff * (2 ** attempt)
                attempt += 1
                self._log.warning(
                    "Transient provider failure (%s), retry %d/%d in %.2fs",
                    exc,
                    attempt,
                    self.settings.retry_count,
                    delay,
                )
                self._sleep(delay)

    def _submit(self, target: str, sequence: int, work: Callable[[], Any], on_done: Handler) -> None:
        def run() -> None:
            if not self._sequencer.is_current(target, sequence):
                self._log.debug("Skipping superseded %s request #%d", target, sequence)
                return
            try:
                outcome = Outcome(target, sequence, value=work())
            except PlaceNotFound as exc:
                self._log.info("%s request #%d: %s", target, sequence, exc)
                outcome = Outcome(target, sequence, error=exc)
            except Exception as exc:  # noqa: BLE001 - delivered to the handler as a typed error
                self._log.error("%s request #%d failed: %s", target, sequence, exc)
                outcome = Outcome(target, sequence, error=exc)
            self._dispatch(partial(self._deliver, outcome, on_done))

        self._executor.submit(run)

    def _deliver(self, outcome: Outcome, on_done: Handler) -> None:
        if not self._sequencer.is_current(outcome.target, outcome.sequence):
            self._log.debug("Dropping stale %s completion #%d", outcome.target, outcome.sequence)
            return
        on_done(outcome)


__all__ = [
    "FORECAST",
    "FetchOrchestrator",
    "HISTORY",
    "Outcome",
    "RECENT",
    "RESOLVE",
    "RequestSequencer",
    "SUGGESTIONS",
    "WEATHER",
    "WeatherReport",
]

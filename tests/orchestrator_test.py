from __future__ import annotations

from typing import Callable, Dict, List, Optional

import pytest

from weatherdesk.config import PipelineSettings
from weatherdesk.entities import PlaceRecord, WeatherReading
from weatherdesk.providers.base import (
    CredentialMissing,
    MalformedResponse,
    PlaceNotFound,
    ResolutionFailure,
    TransientProviderError,
)
from weatherdesk.services.orchestrator import (
    FORECAST,
    SUGGESTIONS,
    WEATHER,
    FetchOrchestrator,
    Outcome,
    RequestSequencer,
    WeatherReport,
)
from weatherdesk.storage import StorageError


NOW = 1_700_000_000

PLACES = {
    "Berlin": PlaceRecord(name="Berlin", latitude=52.52, longitude=13.405, country="DE"),
    "Paris": PlaceRecord(name="Paris", latitude=48.8566, longitude=2.3522, country="FR"),
    "Moscow": PlaceRecord(name="Moscow", latitude=55.7558, longitude=37.6173, country="RU"),
}


class ManualExecutor:
    """Executor stub that runs submitted work only when the test says so."""

    def __init__(self) -> None:
        self.pending: List[Callable[[], None]] = []

    def submit(self, fn, *args, **kwargs):
        self.pending.append(lambda: fn(*args, **kwargs))

    def run(self, index: int = 0) -> None:
        self.pending.pop(index)()

    def run_all(self) -> None:
        while self.pending:
            self.run()

    def shutdown(self, wait: bool = True) -> None:
        self.pending.clear()


class ClientStub:
    def __init__(self) -> None:
        self.readings: Dict[str, WeatherReading] = {}
        self.resolve_errors: List[Exception] = []
        self.current_errors: List[Exception] = []
        self.forecast_error: Optional[Exception] = None
        self.calls: List[tuple] = []

    def resolve(self, query, options, *, limit=5):
        self.calls.append(("resolve", query))
        if self.resolve_errors:
            raise self.resolve_errors.pop(0)
        return [PLACES[query]] if query in PLACES else []

    def current_reading(self, place, options):
        self.calls.append(("current", place.name))
        if self.current_errors:
            raise self.current_errors.pop(0)
        return self.readings.get(place.name) or make_reading(20.5, units=options.units)

    def forecast(self, place, days, options):
        self.calls.append(("forecast", place.name, days))
        if self.forecast_error is not None:
            raise self.forecast_error
        return [make_reading(float(day)) for day in range(days)]

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


class FailingStore:
    """Wraps a real store and fails selected operations."""

    def __init__(self, store, failing: set) -> None:
        self._store = store
        self._failing = failing

    def __getattr__(self, name):
        if name in self._failing:
            def fail(*args, **kwargs):
                raise StorageError(f"{name} failed")

            return fail
        return getattr(self._store, name)


def make_reading(temp: float, observed_at: int = NOW, units: str = "metric") -> WeatherReading:
    return WeatherReading(
        temperature=temp,
        feels_like=temp,
        temp_min=temp,
        temp_max=temp,
        humidity=65,
        pressure=1013,
        wind_speed=5.2,
        wind_deg=180,
        description="clear",
        icon_code="01d",
        observed_at=observed_at,
        units=units,
    )


@pytest.fixture
def executor() -> ManualExecutor:
    return ManualExecutor()


@pytest.fixture
def stub() -> ClientStub:
    return ClientStub()


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(api_key="test-key", cache_ttl_minutes=0, retry_count=2, retry_backoff=0.1)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_orchestrator(stub, store, settings, executor, sleeps):
    def factory(**overrides) -> FetchOrchestrator:
        kwargs = dict(
            client=stub,
            store=store,
            settings=settings,
            executor=executor,
            sleep=sleeps.append,
            clock=lambda: NOW + 60,
        )
        kwargs.update(overrides)
        return FetchOrchestrator(**kwargs)

    return factory


def test_sequencer_is_per_target():
    sequencer = RequestSequencer()

    assert sequencer.next(WEATHER) == 1
    assert sequencer.next(WEATHER) == 2
    assert sequencer.next(FORECAST) == 1
    assert sequencer.is_current(WEATHER, 2)
    assert not sequencer.is_current(WEATHER, 1)


def test_operations_do_not_run_on_caller(make_orchestrator, executor, stub):
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    orchestrator.load_weather("Moscow", results.append)

    assert stub.calls == []
    assert orchestrator.process_pending() == 0
    executor.run_all()
    assert results == []
    assert orchestrator.process_pending() == 1
    assert len(results) == 1


def test_load_weather_resolves_fetches_and_persists(make_orchestrator, executor, store):
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    sequence = orchestrator.load_weather("Moscow", results.append)
    executor.run_all()
    orchestrator.process_pending()

    outcome = results[0]
    assert outcome.ok
    assert outcome.sequence == sequence
    report: WeatherReport = outcome.value
    assert report.reading.formatted_temperature == "20.5°C"
    assert report.reading.wind_direction == "S"
    assert report.place.id > 0
    assert report.from_cache is False
    assert report.storage_error is None
    assert store.history(report.place, 10)[0].temperature == 20.5


def test_load_weather_unknown_query_is_place_not_found(make_orchestrator, executor, stub, store):
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    orchestrator.load_weather("Atlantis", results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert isinstance(results[0].error, PlaceNotFound)
    assert results[0].error.query == "Atlantis"
    assert stub.count("current") == 0
    assert store.count_places() == 0


def test_stale_weather_completion_is_discarded(make_orchestrator, executor, store):
    orchestrator = make_orchestrator()
    applied: List[str] = []

    def on_done(outcome: Outcome) -> None:
        applied.append(outcome.value.place.name)

    orchestrator.load_weather("Berlin", on_done)
    orchestrator.load_weather("Paris", on_done)

    executor.run(1)  # Paris finishes first
    orchestrator.process_pending()
    executor.run(0)  # Berlin finishes late
    orchestrator.process_pending()

    assert applied == ["Paris"]
    assert store.last_selected_place().name == "Paris"
    assert store.history(PLACES["Berlin"], 10) == []


def test_stale_completion_dropped_even_if_queued_before_newer(make_orchestrator, executor):
    orchestrator = make_orchestrator()
    applied: List[str] = []

    orchestrator.load_weather("Berlin", lambda outcome: applied.append(outcome.value.place.name))
    executor.run_all()
    orchestrator.load_weather("Paris", lambda outcome: applied.append(outcome.value.place.name))
    executor.run_all()
    orchestrator.process_pending()

    assert applied == ["Paris"]


def test_targets_are_independent(make_orchestrator, executor):
    orchestrator = make_orchestrator()
    seen: List[str] = []

    orchestrator.load_weather("Berlin", lambda outcome: seen.append(outcome.target))
    orchestrator.search_places("Pa", lambda outcome: seen.append(outcome.target))
    orchestrator.load_forecast(PLACES["Berlin"], 3, lambda outcome: seen.append(outcome.target))
    executor.run_all()
    orchestrator.process_pending()

    assert sorted(seen) == sorted([WEATHER, SUGGESTIONS, FORECAST])


def test_search_failures_become_empty_suggestions(make_orchestrator, executor, stub, settings):
    orchestrator = make_orchestrator()
    stub.resolve_errors = [
        ResolutionFailure("Mo", MalformedResponse("bad body")),
    ]
    results: List[Outcome] = []

    orchestrator.search_places("Mo", results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert results[0].ok
    assert results[0].value == []


def test_superseded_work_is_skipped_before_it_starts(make_orchestrator, executor, stub):
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    for query in ("Pa", "Par", "Pari", "Paris"):
        orchestrator.search_places(query, results.append)
    executor.run_all()

    assert stub.calls == [("resolve", "Paris")]
    assert orchestrator.process_pending() == 1
    assert results[0].value == [PLACES["Paris"]]


def test_resolve_place_surfaces_provider_failures(make_orchestrator, executor, stub, sleeps):
    orchestrator = make_orchestrator()
    stub.resolve_errors = [ResolutionFailure("Paris", TransientProviderError("HTTP 503", status=503)) for _ in range(3)]
    results: List[Outcome] = []

    orchestrator.resolve_place("Paris", results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert isinstance(results[0].error, ResolutionFailure)
    assert isinstance(results[0].error.cause, TransientProviderError)
    assert stub.count("resolve") == 3
    assert len(sleeps) == 2


def test_resolve_place_unknown_query(make_orchestrator, executor):
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    orchestrator.resolve_place("Atlantis", results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert isinstance(results[0].error, PlaceNotFound)
    assert results[0].error.query == "Atlantis"


def test_resolve_place_returns_best_candidate(make_orchestrator, executor):
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    orchestrator.resolve_place("Berlin", results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert results[0].value == PLACES["Berlin"]


def test_search_returns_candidates(make_orchestrator, executor):
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    orchestrator.search_places("Paris", results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert results[0].value == [PLACES["Paris"]]


def test_transient_errors_are_retried_with_backoff(make_orchestrator, executor, stub, sleeps):
    orchestrator = make_orchestrator()
    stub.current_errors = [TransientProviderError("timeout"), TransientProviderError("HTTP 503", status=503)]
    results: List[Outcome] = []

    orchestrator.load_weather(PLACES["Paris"], results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert results[0].ok
    assert stub.count("current") == 3
    assert sleeps == pytest.approx([0.1, 0.2])


def test_retries_are_bounded(make_orchestrator, executor, stub, sleeps):
    orchestrator = make_orchestrator()
    stub.current_errors = [TransientProviderError("timeout") for _ in range(5)]
    results: List[Outcome] = []

    orchestrator.load_weather(PLACES["Paris"], results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert isinstance(results[0].error, TransientProviderError)
    assert stub.count("current") == 3
    assert len(sleeps) == 2


def test_credential_errors_are_not_retried(make_orchestrator, executor, stub, sleeps):
    orchestrator = make_orchestrator()
    stub.resolve_errors = [CredentialMissing("API key is not configured")]
    results: List[Outcome] = []

    orchestrator.load_weather("Paris", results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert isinstance(results[0].error, CredentialMissing)
    assert stub.count("resolve") == 1
    assert sleeps == []


def test_storage_failure_keeps_fetched_reading(make_orchestrator, executor, store):
    orchestrator = make_orchestrator(store=FailingStore(store, {"record_reading"}))
    results: List[Outcome] = []

    orchestrator.load_weather("Moscow", results.append)
    executor.run_all()
    orchestrator.process_pending()

    report = results[0].value
    assert results[0].ok
    assert report.reading.temperature == 20.5
    assert isinstance(report.storage_error, StorageError)


def test_fresh_history_entry_skips_network(make_orchestrator, executor, stub, store, settings):
    place = store.upsert_place(PLACES["Paris"])
    store.record_reading(place, make_reading(11.0, observed_at=NOW))
    orchestrator = make_orchestrator(settings=PipelineSettings(api_key="k", cache_ttl_minutes=30))
    results: List[Outcome] = []

    orchestrator.load_weather(PLACES["Paris"], results.append)
    executor.run_all()
    orchestrator.process_pending()

    report = results[0].value
    assert report.from_cache is True
    assert report.reading.temperature == 11.0
    assert stub.count("current") == 0
    assert store.count_readings() == 1


def test_expired_history_entry_is_refetched(make_orchestrator, executor, stub, store):
    place = store.upsert_place(PLACES["Paris"])
    store.record_reading(place, make_reading(11.0, observed_at=NOW - 3600))
    orchestrator = make_orchestrator(settings=PipelineSettings(api_key="k", cache_ttl_minutes=30))
    results: List[Outcome] = []

    orchestrator.load_weather(PLACES["Paris"], results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert results[0].value.from_cache is False
    assert stub.count("current") == 1
    assert store.count_readings() == 2


def test_history_lookup_failure_falls_back_to_network(make_orchestrator, executor, stub, store):
    orchestrator = make_orchestrator(
        store=FailingStore(store, {"history"}),
        settings=PipelineSettings(api_key="k", cache_ttl_minutes=30),
    )
    results: List[Outcome] = []

    orchestrator.load_weather(PLACES["Paris"], results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert results[0].ok
    assert stub.count("current") == 1


def test_forecast_failure_is_reported_separately(make_orchestrator, executor, stub):
    orchestrator = make_orchestrator()
    stub.forecast_error = MalformedResponse("invalid forecast payload")
    weather: List[Outcome] = []
    forecast: List[Outcome] = []

    orchestrator.load_weather("Paris", weather.append)
    orchestrator.load_forecast(PLACES["Paris"], 4, forecast.append)
    executor.run_all()
    orchestrator.process_pending()

    assert weather[0].ok
    assert isinstance(forecast[0].error, MalformedResponse)


def test_forecast_uses_default_days(make_orchestrator, executor, stub, settings):
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    orchestrator.load_forecast(PLACES["Paris"], None, results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert len(results[0].value) == settings.forecast_days


def test_load_last_place_with_empty_store(make_orchestrator, executor, stub):
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    orchestrator.load_last_place(results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert results[0].ok
    assert results[0].value is None
    assert stub.calls == []


def test_load_last_place_reloads_weather(make_orchestrator, executor, stub, store):
    store.upsert_place(PLACES["Berlin"])
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    orchestrator.load_last_place(results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert results[0].value.place.name == "Berlin"
    assert stub.calls == [("current", "Berlin")]


def test_history_storage_errors_are_hard_errors(make_orchestrator, executor, store):
    orchestrator = make_orchestrator(store=FailingStore(store, {"history"}))
    results: List[Outcome] = []

    orchestrator.load_history(PLACES["Paris"], 10, results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert isinstance(results[0].error, StorageError)


def test_recent_places(make_orchestrator, executor, store):
    store.upsert_place(PLACES["Berlin"])
    store.upsert_place(PLACES["Paris"])
    orchestrator = make_orchestrator()
    results: List[Outcome] = []

    orchestrator.load_recent_places(1, results.append)
    executor.run_all()
    orchestrator.process_pending()

    assert [p.name for p in results[0].value] == ["Paris"]


def test_custom_dispatch_receives_completions(make_orchestrator, executor):
    posted: List[Callable[[], None]] = []
    orchestrator = make_orchestrator(dispatch=posted.append)
    results: List[Outcome] = []

    orchestrator.search_places("Paris", results.append)
    executor.run_all()

    assert orchestrator.process_pending() == 0
    assert len(posted) == 1
    posted[0]()
    assert results[0].value == [PLACES["Paris"]]


def test_thread_pool_round_trip(stub, store, settings):
    results: List[Outcome] = []
    with FetchOrchestrator(stub, store, settings) as orchestrator:
        orchestrator.load_weather("Moscow", results.append)
        for _ in range(50):
            if orchestrator.process_pending(timeout=0.1):
                break

    assert results and results[0].ok
    assert results[0].value.place.name == "Moscow"

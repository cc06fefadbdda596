"""SQLite persistence for resolved places and their reading history."""
from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional
from urllib.parse import unquote

from .entities import PlaceRecord, WeatherReading


logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///weatherdesk.db"
SQLITE_PREFIX = "sqlite:///"


class StorageError(RuntimeError):
    """Local database failure."""


class PlaceUnresolved(StorageError):
    """A place key could not be mapped to a stored id, even after an upsert."""


# ---------------------------------------------------------------------------

def database_path(url: str) -> str:
    if url.startswith(SQLITE_PREFIX):
        path = url[len(SQLITE_PREFIX):]
    elif "://" in url:
        raise ValueError(f"Unsupported database scheme: {url.split('://', 1)[0]}")
    else:
        path = url
    path = unquote(path) or ":memory:"
    if path == ":memory:":
        return path
    return os.path.abspath(path)


def create_connection(url: str) -> sqlite3.Connection:
    connection = sqlite3.connect(database_path(url), check_same_thread=False)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys=ON")
    return connection


def run_migrations(connection: sqlite3.Connection) -> None:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS places (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            country TEXT,
            region TEXT,
            latitude REAL NOT NULL,
            longitude REAL NOT NULL,
            last_selected_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (name, latitude, longitude)
        )
        """
    )
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS reading_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            place_id INTEGER NOT NULL,
            temperature REAL NOT NULL,
            feels_like REAL NOT NULL,
            temp_min REAL NOT NULL,
            temp_max REAL NOT NULL,
            humidity INTEGER NOT NULL,
            pressure INTEGER NOT NULL,
            wind_speed REAL NOT NULL,
            wind_deg INTEGER NOT NULL,
            description TEXT NOT NULL,
            icon_code TEXT NOT NULL,
            units TEXT NOT NULL,
            observed_at INTEGER NOT NULL,
            recorded_at TEXT NOT NULL,
            FOREIGN KEY(place_id) REFERENCES places(id) ON DELETE CASCADE
        )
        """
    )
    connection.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_places_last_selected
        ON places (last_selected_at, id)
        """
    )
    connection.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_reading_history_place
        ON reading_history (place_id, id)
        """
    )
    connection.commit()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _place_from_row(row) -> PlaceRecord:
    return PlaceRecord(
        id=row["id"],
        name=row["name"],
        latitude=float(row["latitude"]),
        longitude=float(row["longitude"]),
        country=row["country"],
        region=row["region"],
    )


def _reading_from_row(row) -> WeatherReading:
    return WeatherReading(
        temperature=row["temperature"],
        feels_like=row["feels_like"],
        temp_min=row["temp_min"],
        temp_max=row["temp_max"],
        humidity=row["humidity"],
        pressure=row["pressure"],
        wind_speed=row["wind_speed"],
        wind_deg=row["wind_deg"],
        description=row["description"],
        icon_code=row["icon_code"],
        units=row["units"],
        observed_at=row["observed_at"],
    )


# ---------------------------------------------------------------------------

class PersistenceStore:
    """Owns the local database file.

    A single connection is opened per store and every statement runs under
    the store's lock, so worker threads can share one instance without
    coordinating among themselves.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        connect: bool = True,
    ) -> None:
        self.url = url or DEFAULT_DATABASE_URL
        self._clock = clock
        self._lock = threading.Lock()
        self._connection: Optional[sqlite3.Connection] = None
        if connect:
            self.open()

    # -- Lifecycle --------------------------------------------------------
    def open(self) -> None:
        with self._lock:
            if self._connection is not None:
                return
            connection = None
            try:
                connection = create_connection(self.url)
                run_migrations(connection)
            except sqlite3.Error as exc:
                if connection is not None:
                    connection.close()
                logger.error("Failed to open database %s", self.url, exc_info=exc)
                raise StorageError(f"cannot open database {self.url}") from exc
            self._connection = connection
        logger.info("Opened database %s", self.url)

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None
        logger.info("Closed database %s", self.url)

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def __enter__(self) -> "PersistenceStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- Places -----------------------------------------------------------
    def upsert_place(self, place: PlaceRecord) -> PlaceRecord:
        """Insert or update ``place`` by its key and mark it as last selected."""
        with self._session() as connection:
            stored = self._upsert(connection, place)
        if stored is None:
            raise PlaceUnresolved(f"place {place.key} vanished during upsert")
        logger.info("Saved place %s (id=%s)", stored.name, stored.id)
        return stored

    def last_selected_place(self) -> Optional[PlaceRecord]:
        places = self.recent_places(1)
        return places[0] if places else None

    def recent_places(self, limit: int = 10) -> List[PlaceRecord]:
        if limit <= 0:
            return []
        with self._session() as connection:
            rows = connection.execute(
                "SELECT * FROM places ORDER BY last_selected_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_place_from_row(row) for row in rows]

    def delete_place(self, place: PlaceRecord) -> bool:
        with self._session() as connection:
            cursor = connection.execute(
                "DELETE FROM places WHERE name = ? AND latitude = ? AND longitude = ?",
                place.key,
            )
        return cursor.rowcount > 0

    # -- History ----------------------------------------------------------
    def record_reading(self, place: PlaceRecord, reading: WeatherReading) -> None:
        """Append ``reading`` to the place's history, upserting the place if unknown."""
        with self._session() as connection:
            place_id = self._place_id(connection, place)
            if place_id is None:
                stored = self._upsert(connection, place)
                place_id = stored.id if stored is not None else None
            if place_id is None:
                raise PlaceUnresolved(f"no stored id for place {place.key}")
            connection.execute(
                """
                INSERT INTO reading_history (
                    place_id, temperature, feels_like, temp_min, temp_max, humidity,
                    pressure, wind_speed, wind_deg, description, icon_code, units,
                    observed_at, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    place_id,
                    reading.temperature,
                    reading.feels_like,
                    reading.temp_min,
                    reading.temp_max,
                    reading.humidity,
                    reading.pressure,
                    reading.wind_speed,
                    reading.wind_deg,
                    reading.description,
                    reading.icon_code,
                    reading.units,
                    reading.observed_at,
                    self._timestamp(),
                ),
            )
        logger.info("Recorded reading for %s", place.name)

    def history(self, place: PlaceRecord, limit: int = 10) -> List[WeatherReading]:
        """Return up to ``limit`` readings for ``place``, newest first."""
        if limit <= 0:
            return []
        with self._session() as connection:
            rows = connection.execute(
                """
                SELECT h.*
                FROM reading_history h
                JOIN places p ON h.place_id = p.id
                WHERE p.name = ? AND p.latitude = ? AND p.longitude = ?
                ORDER BY h.id DESC
                LIMIT ?
                """,
                (*place.key, limit),
            ).fetchall()
        return [_reading_from_row(row) for row in rows]

    def count_places(self) -> int:
        with self._session() as connection:
            row = connection.execute("SELECT COUNT(*) FROM places").fetchone()
        return int(row[0])

    def count_readings(self) -> int:
        with self._session() as connection:
            row = connection.execute("SELECT COUNT(*) FROM reading_history").fetchone()
        return int(row[0])

    # -- Helpers ----------------------------------------------------------
    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            connection = self._connection
            if connection is None:
                raise StorageError("database is closed")
            try:
                yield connection
                connection.commit()
            except sqlite3.Error as exc:
                connection.rollback()
                logger.error("Database operation failed", exc_info=exc)
                raise StorageError(str(exc)) from exc
            except Exception:
                connection.rollback()
                raise

    def _upsert(self, connection: sqlite3.Connection, place: PlaceRecord) -> Optional[PlaceRecord]:
        now = self._timestamp()
        connection.execute(
            """
            INSERT INTO places (name, country, region, latitude, longitude, last_selected_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (name, latitude, longitude) DO UPDATE SET
                country = COALESCE(excluded.country, places.country),
                region = COALESCE(excluded.region, places.region),
                last_selected_at = excluded.last_selected_at
            """,
            (place.name, place.country, place.region, place.latitude, place.longitude, now, now),
        )
        row = connection.execute(
            "SELECT * FROM places WHERE name = ? AND latitude = ? AND longitude = ?",
            place.key,
        ).fetchone()
        return _place_from_row(row) if row is not None else None

    def _place_id(self, connection: sqlite3.Connection, place: PlaceRecord) -> Optional[int]:
        row = connection.execute(
            "SELECT id FROM places WHERE name = ? AND latitude = ? AND longitude = ?",
            place.key,
        ).fetchone()
        return int(row["id"]) if row is not None else None

    def _timestamp(self) -> str:
        return self._clock().astimezone(timezone.utc).isoformat(timespec="microseconds")


__all__ = [
    "DEFAULT_DATABASE_URL",
    "PersistenceStore",
    "PlaceUnresolved",
    "StorageError",
    "create_connection",
    "database_path",
    "run_migrations",
]

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Callable, List

from booking.state import Provider, Reservation
from .storage import ReservationStore


class SQLiteReservationStore(ReservationStore):
    """SQLite-backed store with the same contract as the JSON store.

    Reservations are flat rows; the pet and the provider schedule are stored
    as JSON text columns. ":memory:" is accepted for tests.
    """

    def __init__(self, db_path: str, clock: Callable[[], datetime] = datetime.now) -> None:
        super().__init__(clock)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._lock = RLock()
        # Use check_same_thread=False since we protect with a lock
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._ensure_tables()

    def _ensure_tables(self) -> None:
        with self._lock, self.conn:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    Id TEXT PRIMARY KEY,
                    Payload TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS appointments (
                    Id TEXT PRIMARY KEY,
                    ProviderID TEXT NOT NULL,
                    RequesterID TEXT NOT NULL,
                    Pet TEXT NOT NULL,
                    DateTime TEXT NOT NULL,
                    Duration INTEGER NOT NULL,
                    Reason TEXT,
                    Status TEXT NOT NULL,
                    CreatedAt TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_appointments_provider
                    ON appointments(ProviderID, DateTime);
                """
            )

    @staticmethod
    def _row_to_reservation(row: sqlite3.Row) -> Reservation:
        return Reservation(
            id=row["Id"],
            provider_id=row["ProviderID"],
            requester_id=row["RequesterID"],
            pet=json.loads(row["Pet"]),
            date_time=datetime.fromisoformat(row["DateTime"]),
            duration=row["Duration"],
            reason=row["Reason"] or "",
            status=row["Status"],
            created_at=datetime.fromisoformat(row["CreatedAt"]),
        )

    @staticmethod
    def _reservation_params(reservation: Reservation) -> tuple:
        return (
            reservation.provider_id,
            reservation.requester_id,
            reservation.pet.model_dump_json(),
            reservation.date_time.isoformat(),
            reservation.duration,
            reservation.reason,
            reservation.status.value,
            reservation.created_at.isoformat(),
            reservation.id,
        )

    def _load_reservations(self) -> List[Reservation]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM appointments ORDER BY DateTime")
            return [self._row_to_reservation(r) for r in cur.fetchall()]

    def _insert_reservation(self, reservation: Reservation) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO appointments(ProviderID, RequesterID, Pet, DateTime, Duration, Reason, Status, CreatedAt, Id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._reservation_params(reservation),
            )

    def _replace_reservation(self, reservation: Reservation) -> bool:
        with self._lock, self.conn:
            cur = self.conn.execute(
                "UPDATE appointments SET ProviderID=?, RequesterID=?, Pet=?, DateTime=?, Duration=?, "
                "Reason=?, Status=?, CreatedAt=? WHERE Id=?",
                self._reservation_params(reservation),
            )
            return cur.rowcount > 0

    def _load_providers(self) -> List[Provider]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT Payload FROM providers ORDER BY Id")
            return [Provider.model_validate_json(r["Payload"]) for r in cur.fetchall()]

    def _upsert_provider(self, provider: Provider) -> None:
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO providers(Id, Payload) VALUES (?, ?) "
                "ON CONFLICT(Id) DO UPDATE SET Payload=excluded.Payload",
                (provider.id, provider.model_dump_json()),
            )

    def close(self) -> None:
        with self._lock:
            self.conn.close()

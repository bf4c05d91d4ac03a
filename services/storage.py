import os
import json
import uuid
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple

import pandas as pd

from booking.state import Provider, Reservation, ReservationRequest
from scheduling.conflicts import find_conflicts
from .errors import SchedulingError, StorageError, ValidationError
from .logger import setup_logger

logger = setup_logger("storage")

MIN_DURATION_MINUTES = 30


def validate_reservation_request(request: ReservationRequest, now: datetime) -> List[str]:
    errors = []
    if not request.provider_id.strip():
        errors.append("Doctor ID is required")
    if not request.requester_id.strip():
        errors.append("Pet owner ID is required")
    if not request.pet.name.strip():
        errors.append("Pet name is required")
    if not request.pet.species.strip():
        errors.append("Pet species is required")
    if request.pet.age < 0:
        errors.append("Pet age cannot be negative")
    if request.date_time < now:
        errors.append("Appointment cannot be scheduled in the past")
    if request.duration < MIN_DURATION_MINUTES:
        errors.append(f"Appointment duration must be at least {MIN_DURATION_MINUTES} minutes")
    if not request.reason.strip():
        errors.append("Reason for visit is required")
    return errors


def new_reservation_id() -> str:
    return f"appointment_{uuid.uuid4().hex}"


class ReservationStore(ABC):
    """Persistence contract consumed by the booking core.

    Subclasses implement the synchronous ``_``-prefixed primitives; this base
    class adds validation, id assignment, the authoritative availability
    check, and translates backend failures into StorageError.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self.clock = clock

    # backend primitives
    @abstractmethod
    def _load_reservations(self) -> List[Reservation]: ...

    @abstractmethod
    def _insert_reservation(self, reservation: Reservation) -> None: ...

    @abstractmethod
    def _replace_reservation(self, reservation: Reservation) -> bool: ...

    @abstractmethod
    def _load_providers(self) -> List[Provider]: ...

    @abstractmethod
    def _upsert_provider(self, provider: Provider) -> None: ...

    def _guard(self, action: str, fn, *args):
        try:
            return fn(*args)
        except SchedulingError:
            raise
        except Exception as e:
            logger.error(f"{action} failed: {e}")
            raise StorageError(f"Failed to {action}") from e

    # reservations
    async def list_all_reservations(self) -> List[Reservation]:
        return self._guard("retrieve appointments", self._load_reservations)

    async def list_reservations_for_provider(self, provider_id: str) -> List[Reservation]:
        items = await self.list_all_reservations()
        return [r for r in items if r.provider_id == provider_id]

    async def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        items = await self.list_all_reservations()
        return next((r for r in items if r.id == reservation_id), None)

    async def save_reservation(self, request: ReservationRequest) -> Reservation:
        errors = validate_reservation_request(request, self.clock())
        if errors:
            raise ValidationError(f"Appointment validation failed: {', '.join(errors)}", errors)
        reservation = Reservation(
            **request.model_dump(exclude={"id", "created_at"}),
            id=new_reservation_id(),
            created_at=self.clock(),
        )
        self._guard("save appointment", self._insert_reservation, reservation)
        logger.info(f"wrote appointment id={reservation.id} provider={reservation.provider_id}")
        return reservation

    async def update_reservation(self, reservation: Reservation) -> None:
        found = self._guard("update appointment", self._replace_reservation, reservation)
        if not found:
            raise StorageError(f"Appointment not found: {reservation.id}")
        logger.info(f"updated appointment id={reservation.id} status={reservation.status.value}")

    async def is_slot_available(self, provider_id: str, date_time: datetime, duration: int = 30) -> bool:
        candidate = ReservationRequest(
            provider_id=provider_id,
            requester_id="availability-check",
            pet={"name": "-", "species": "-"},
            date_time=date_time,
            duration=duration,
        )
        existing = await self.list_reservations_for_provider(provider_id)
        return not find_conflicts(candidate, existing)

    # providers
    async def list_providers(self) -> List[Provider]:
        return self._guard("retrieve doctors", self._load_providers)

    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        providers = await self.list_providers()
        return next((p for p in providers if p.id == provider_id), None)

    async def save_provider(self, provider: Provider) -> Provider:
        self._guard("save doctor", self._upsert_provider, provider)
        return provider

    async def update_provider(self, provider: Provider) -> None:
        if await self.get_provider(provider.id) is None:
            raise StorageError(f"Doctor not found: {provider.id}")
        self._guard("update doctor", self._upsert_provider, provider)
        logger.info(f"updated doctor id={provider.id}")


class InMemoryReservationStore(ReservationStore):
    def __init__(self, providers: Optional[List[Provider]] = None, clock: Callable[[], datetime] = datetime.now) -> None:
        super().__init__(clock)
        self._lock = RLock()
        self._reservations: Dict[str, Reservation] = {}
        self._providers: Dict[str, Provider] = {p.id: p.model_copy(deep=True) for p in providers or []}

    def _load_reservations(self) -> List[Reservation]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._reservations.values()]

    def _insert_reservation(self, reservation: Reservation) -> None:
        with self._lock:
            self._reservations[reservation.id] = reservation.model_copy(deep=True)

    def _replace_reservation(self, reservation: Reservation) -> bool:
        with self._lock:
            if reservation.id not in self._reservations:
                return False
            self._reservations[reservation.id] = reservation.model_copy(deep=True)
            return True

    def _load_providers(self) -> List[Provider]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._providers.values()]

    def _upsert_provider(self, provider: Provider) -> None:
        with self._lock:
            self._providers[provider.id] = provider.model_copy(deep=True)


def _atomic_write_json(path: Path, data: List[Dict]) -> Tuple[bool, Optional[str]]:
    tmp_path: Optional[Path] = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile("w", delete=False, dir=str(path.parent), encoding="utf-8") as tmp:
            tmp_path = Path(tmp.name)
            json.dump(data, tmp, indent=2)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(str(tmp_path), str(path))
        # Validate by re-open
        with path.open("r", encoding="utf-8") as f:
            json.load(f)
        return True, None
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Atomic write failed: {e}")
        return False, str(e)
    finally:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


class JsonReservationStore(ReservationStore):
    """File-backed store: providers.json and appointments.json under ``data_dir``.

    Every write also refreshes an appointments.xlsx mirror for people who
    read the book in a spreadsheet; mirror failures are only logged.
    """

    def __init__(self, data_dir: Path, clock: Callable[[], datetime] = datetime.now) -> None:
        super().__init__(clock)
        self.data_dir = Path(data_dir)
        self.appointments_path = self.data_dir / "appointments.json"
        self.providers_path = self.data_dir / "providers.json"
        self.mirror_path = self.data_dir / "appointments.xlsx"
        self._lock = RLock()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for path in (self.appointments_path, self.providers_path):
            if not path.exists():
                success, err = _atomic_write_json(path, [])
                if not success:
                    raise StorageError(f"Failed initializing storage: {err}")

    def _read(self, path: Path) -> List[Dict]:
        with self._lock:
            try:
                with path.open("r", encoding="utf-8") as f:
                    return json.load(f)
            except FileNotFoundError:
                return []

    def _write(self, path: Path, items: List[Dict]) -> None:
        with self._lock:
            ok, err = _atomic_write_json(path, items)
            if not ok:
                raise StorageError(f"Failed to write {path.name}: {err}")

    def _write_mirror(self, items: List[Dict]) -> None:
        try:
            df = pd.json_normalize(items) if items else pd.DataFrame()
            df.to_excel(str(self.mirror_path), index=False)
        except Exception as e:
            logger.warning(f"Failed to write Excel: {e}")

    def _load_reservations(self) -> List[Reservation]:
        return [Reservation.model_validate(it) for it in self._read(self.appointments_path)]

    def _save_reservations(self, reservations: List[Reservation]) -> None:
        items = [r.model_dump(mode="json") for r in reservations]
        self._write(self.appointments_path, items)
        self._write_mirror(items)

    def _insert_reservation(self, reservation: Reservation) -> None:
        with self._lock:
            items = self._load_reservations()
            items.append(reservation)
            self._save_reservations(items)

    def _replace_reservation(self, reservation: Reservation) -> bool:
        with self._lock:
            items = self._load_reservations()
            idx = next((i for i, r in enumerate(items) if r.id == reservation.id), None)
            if idx is None:
                return False
            items[idx] = reservation
            self._save_reservations(items)
            return True

    def _load_providers(self) -> List[Provider]:
        return [Provider.model_validate(it) for it in self._read(self.providers_path)]

    def _upsert_provider(self, provider: Provider) -> None:
        with self._lock:
            providers = [p for p in self._load_providers() if p.id != provider.id]
            providers.append(provider)
            self._write(self.providers_path, [p.model_dump(mode="json") for p in providers])


def build_store(settings) -> ReservationStore:
    backend = settings.storage_backend
    if backend == "memory":
        return InMemoryReservationStore()
    if backend == "sqlite":
        from .sqlite_storage import SQLiteReservationStore

        db_path = settings.sqlite_db_path or str(Path(settings.data_dir) / "appointments.db")
        return SQLiteReservationStore(db_path)
    return JsonReservationStore(settings.data_dir)


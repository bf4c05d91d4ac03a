from datetime import datetime, timedelta

import pytest

from booking.state import ReservationStatus
from services.config import Settings
from services.errors import StorageError, ValidationError
from services.sqlite_storage import SQLiteReservationStore
from services.storage import (
    InMemoryReservationStore,
    JsonReservationStore,
    build_store,
    validate_reservation_request,
)


@pytest.fixture(params=["memory", "json", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryReservationStore()
    elif request.param == "json":
        store = JsonReservationStore(tmp_path / "data")
    else:
        store = SQLiteReservationStore(str(tmp_path / "appointments.db"))
    return store


@pytest.mark.asyncio
async def test_save_and_read_back(backend, provider, at, make_request):
    await backend.save_provider(provider)
    saved = await backend.save_reservation(make_request(at("09:00")))

    assert saved.id.startswith("appointment_")
    assert saved.status == ReservationStatus.SCHEDULED
    assert await backend.get_reservation(saved.id) == saved
    assert [r.id for r in await backend.list_reservations_for_provider("doc-1")] == [saved.id]
    assert await backend.list_reservations_for_provider("doc-2") == []
    assert (await backend.get_provider("doc-1")).schedule == provider.schedule


@pytest.mark.asyncio
async def test_slot_check_and_status_update(backend, at, make_request):
    saved = await backend.save_reservation(make_request(at("09:00")))
    assert not await backend.is_slot_available("doc-1", at("09:15"), 30)
    assert await backend.is_slot_available("doc-1", at("09:30"), 30)

    await backend.update_reservation(saved.model_copy(update={"status": ReservationStatus.CANCELLED}))
    assert (await backend.get_reservation(saved.id)).status == ReservationStatus.CANCELLED
    assert await backend.is_slot_available("doc-1", at("09:15"), 30)


@pytest.mark.asyncio
async def test_unknown_records_raise_storage_errors(backend, provider, at, make_request):
    saved = await backend.save_reservation(make_request(at("09:00")))
    with pytest.raises(StorageError, match="Appointment not found"):
        await backend.update_reservation(saved.model_copy(update={"id": "appointment_ghost"}))
    with pytest.raises(StorageError, match="Doctor not found"):
        await backend.update_provider(provider)


@pytest.mark.asyncio
async def test_save_validates_the_request(backend, make_request):
    bad = make_request(datetime.now() - timedelta(hours=1), duration=15).model_copy(update={"reason": " "})
    with pytest.raises(ValidationError) as info:
        await backend.save_reservation(bad)
    assert info.value.errors == [
        "Appointment cannot be scheduled in the past",
        "Appointment duration must be at least 30 minutes",
        "Reason for visit is required",
    ]


@pytest.mark.asyncio
async def test_provider_upsert(backend, provider):
    await backend.save_provider(provider)
    await backend.update_provider(provider.model_copy(update={"name": "Dr. R. Rivera"}))
    providers = await backend.list_providers()
    assert [p.name for p in providers] == ["Dr. R. Rivera"]


def test_validation_rules_for_pet(make_request, at):
    req = make_request(at("09:00"))
    req.pet.name = ""
    req.pet.age = -1
    assert validate_reservation_request(req, datetime.now()) == ["Pet name is required", "Pet age cannot be negative"]


@pytest.mark.asyncio
async def test_json_store_survives_restart_and_writes_mirror(tmp_path, provider, at, make_request):
    data_dir = tmp_path / "data"
    first = JsonReservationStore(data_dir)
    await first.save_provider(provider)
    saved = await first.save_reservation(make_request(at("09:00")))

    reopened = JsonReservationStore(data_dir)
    assert [r.id for r in await reopened.list_all_reservations()] == [saved.id]
    assert (await reopened.get_provider("doc-1")).name == provider.name
    assert (data_dir / "appointments.xlsx").exists()


@pytest.mark.asyncio
async def test_corrupt_json_is_a_storage_error(tmp_path):
    store = JsonReservationStore(tmp_path)
    store.appointments_path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StorageError):
        await store.list_all_reservations()


def test_build_store_picks_backend(tmp_path):
    assert isinstance(build_store(Settings(data_dir=tmp_path, storage_backend="memory")), InMemoryReservationStore)
    assert isinstance(build_store(Settings(data_dir=tmp_path, storage_backend="json")), JsonReservationStore)
    sqlite_store = build_store(Settings(data_dir=tmp_path, storage_backend="sqlite"))
    assert isinstance(sqlite_store, SQLiteReservationStore)
    assert sqlite_store.db_path == str(tmp_path / "appointments.db")


def test_build_store_honours_explicit_sqlite_path(tmp_path):
    path = str(tmp_path / "elsewhere" / "clinic.db")
    store = build_store(Settings(data_dir=tmp_path, storage_backend="sqlite", sqlite_db_path=path))
    assert store.db_path == path
    assert (tmp_path / "elsewhere").is_dir()

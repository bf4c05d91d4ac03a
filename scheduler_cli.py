import sys
import json
import click
import asyncio
import dateparser
from datetime import datetime
from typing import Optional
from pydantic import ValidationError as ModelValidationError
from booking.service import SchedulingService, build_service
from booking.state import BookingResult, PetInfo, Provider, ReservationRequest, TimeSlot
from scheduling.availability import working_days
from scheduling.schedule_validator import validate_schedule_structure
from services.config import load_settings
from services.errors import SchedulingError
from services.logger import setup_logger

logger = setup_logger("cli")


def _service() -> SchedulingService:
    return build_service(load_settings())


def _parse_when(text: str) -> datetime:
    dt = dateparser.parse(text, settings={"PREFER_DATES_FROM": "future", "RETURN_AS_TIMEZONE_AWARE": False})
    if not dt:
        raise click.BadParameter(f"could not understand '{text}'", param_hint="--when")
    return dt.replace(second=0, microsecond=0)


def _fmt(dt: datetime) -> str:
    return dt.strftime("%a %Y-%m-%d %H:%M")


def _report(result: BookingResult, verb: str) -> None:
    if result.success:
        r = result.reservation
        click.secho(f"{verb} {r.id}: {r.provider_id} on {_fmt(r.date_time)} ({r.duration}min)", fg="green")
        return
    click.secho(f"{result.error.type}: {result.error.message}", fg="red")
    if result.alternatives:
        click.echo("Other free times that day:")
        for alt in result.alternatives:
            click.echo(f"  - {_fmt(alt)}")
    sys.exit(1)


@click.group()
def cli() -> None:
    pass


@cli.command()
@click.option("--specialization", default=None, help="Only doctors whose specializations match")
def providers(specialization: Optional[str]) -> None:
    """List doctors, their working days and next free slot."""
    svc = _service()

    async def run() -> None:
        items = await svc.store.list_providers()
        if specialization:
            needle = specialization.lower()
            items = [p for p in items if any(needle in s.lower() for s in p.specializations)]
        if not items:
            click.echo("No doctors found.")
            return
        for p in items:
            nxt = await svc.get_next_available_slot(p.id)
            days = ", ".join(d[:3] for d in working_days(p)) or "no working days"
            click.echo(f"{p.id}  {p.name}  [{days}]  next: {_fmt(nxt) if nxt else '-'}")

    asyncio.run(run())


@cli.command("import-providers")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def import_providers(path: str) -> None:
    """Load doctors from a JSON list into the store."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    svc = _service()

    async def run() -> int:
        imported = 0
        for item in raw:
            try:
                provider = Provider.model_validate(item)
            except ModelValidationError as e:
                click.secho(f"skipping invalid doctor entry: {e.errors()[0]['msg']}", fg="yellow")
                continue
            report = validate_schedule_structure(provider.schedule)
            if not report.is_valid:
                click.secho(f"skipping {provider.id}: {'; '.join(report.errors)}", fg="yellow")
                continue
            for warning in report.warnings:
                click.secho(f"{provider.id}: {warning}", fg="yellow")
            await svc.store.save_provider(provider)
            imported += 1
        return imported

    count = asyncio.run(run())
    click.secho(f"Imported {count} doctor(s).", fg="green")


@cli.command()
@click.option("--provider", "provider_id", required=True)
@click.option("--days", default=None, type=int, help="How many days ahead to look")
def slots(provider_id: str, days: Optional[int]) -> None:
    """Show free slots for a doctor."""
    svc = _service()
    try:
        items = asyncio.run(svc.get_available_slots(provider_id, days))
    except SchedulingError as e:
        click.secho(e.message, fg="red")
        sys.exit(1)
    if not items:
        click.echo("No free slots.")
        return
    for dt in items:
        click.echo(_fmt(dt))


@cli.command()
@click.option("--provider", "provider_id", required=True)
@click.option("--when", required=True, help="e.g. 'next monday 9am' or '2030-01-07 09:00'")
@click.option("--duration", default=30, type=int, show_default=True)
@click.option("--requester", required=True, help="Pet owner id")
@click.option("--pet", "pet_name", required=True)
@click.option("--species", required=True)
@click.option("--reason", required=True)
def book(provider_id: str, when: str, duration: int, requester: str, pet_name: str, species: str, reason: str) -> None:
    """Book an appointment."""
    request = ReservationRequest(
        provider_id=provider_id,
        requester_id=requester,
        pet=PetInfo(name=pet_name, species=species),
        date_time=_parse_when(when),
        duration=duration,
        reason=reason,
    )
    svc = _service()
    _report(asyncio.run(svc.attempt_booking(request, requester)), "Booked")


@cli.command()
@click.argument("reservation_id")
def cancel(reservation_id: str) -> None:
    """Cancel an appointment (it stays in the book as cancelled)."""
    svc = _service()
    _report(asyncio.run(svc.cancel(reservation_id)), "Cancelled")


@cli.command("validate-schedule")
@click.option("--provider", "provider_id", required=True)
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--apply", "apply_edit", is_flag=True, help="Save the schedule when it is valid")
def validate_schedule(provider_id: str, path: str, apply_edit: bool) -> None:
    """Check a weekly schedule JSON file against a doctor's appointments."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    schedule = {day: [TimeSlot.model_validate(s) for s in slots] for day, slots in raw.items()}
    svc = _service()

    async def run():
        if apply_edit:
            return await svc.apply_schedule_edit(provider_id, schedule)
        return await svc.validate_schedule_edit(provider_id, schedule)

    try:
        result = asyncio.run(run())
    except SchedulingError as e:
        click.secho(e.message, fg="red")
        sys.exit(1)

    for warning in result.warnings:
        click.secho(f"warning: {warning}", fg="yellow")
    for error in result.errors:
        click.secho(f"error: {error}", fg="red")
    for r in result.conflicting_reservations:
        click.secho(f"conflict: {r.id} on {_fmt(r.date_time)} ({r.duration}min)", fg="red")
    if not result.is_valid:
        sys.exit(1)
    click.secho("Schedule applied." if result.applied else "Schedule is valid.", fg="green")


if __name__ == "__main__":
    cli()

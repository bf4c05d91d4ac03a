"""
Optimistic reservations

While an attempt is in flight its reservation is shown provisionally in a
ProvisionalView. Every provisional change records the commands that undo it;
rollback replays them in the order they were recorded.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Dict, List, Literal, Union

from pydantic import BaseModel, Field

from .state import Reservation


class RemoveProvisional(BaseModel):
    kind: Literal["remove_provisional"] = "remove_provisional"
    reservation_id: str


class RestoreSnapshot(BaseModel):
    kind: Literal["restore_snapshot"] = "restore_snapshot"
    snapshot: List[Reservation] = Field(default_factory=list)


RollbackCommand = Annotated[Union[RemoveProvisional, RestoreSnapshot], Field(discriminator="kind")]


class OptimisticBookingState(BaseModel):
    attempt_id: str
    appointment_id: str
    original_state: List[Reservation] = Field(default_factory=list)
    rollback_actions: List[RollbackCommand] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.now)


class ProvisionalView:
    """The reservations a client would currently see, provisional ones included."""

    def __init__(self) -> None:
        self._items: Dict[str, Reservation] = {}

    @property
    def reservations(self) -> List[Reservation]:
        return list(self._items.values())

    def snapshot(self) -> List[Reservation]:
        return [r.model_copy(deep=True) for r in self._items.values()]

    def add(self, reservation: Reservation) -> None:
        self._items[reservation.id] = reservation

    def remove(self, reservation_id: str) -> None:
        self._items.pop(reservation_id, None)

    def restore(self, snapshot: List[Reservation]) -> None:
        # Only the snapshotted entries are put back; other attempts keep theirs.
        for r in snapshot:
            self._items[r.id] = r.model_copy(deep=True)

    def confirm(self, provisional_id: str, reservation: Reservation) -> None:
        """Swap the provisional entry for the stored reservation."""
        self._items.pop(provisional_id, None)
        self._items[reservation.id] = reservation

    def apply(self, command: RollbackCommand) -> None:
        if isinstance(command, RemoveProvisional):
            self.remove(command.reservation_id)
        elif isinstance(command, RestoreSnapshot):
            self.restore(command.snapshot)
        else:
            raise TypeError(f"Unknown rollback command: {command!r}")

    def __len__(self) -> int:
        return len(self._items)

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from unconf.schemas.room import RoomOut
from unconf.schemas.timeslot import TimeslotOut
from unconf.services.assignment_model import Slot


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SlotRef(CamelModel):
    room_id: int
    timeslot_id: int

    def to_slot(self) -> Slot:
        return Slot(room_id=self.room_id, timeslot_id=self.timeslot_id)


class MoveRequest(CamelModel):
    from_slot: SlotRef
    to_room_id: int
    to_timeslot_id: int
    # Session the client believes sits at from_slot; a mismatch means another editor got there first.
    session_id: int | None = None
    expected_version: int | None = Field(default=None, ge=0)


class SwapRequest(CamelModel):
    slot_a: SlotRef
    slot_b: SlotRef
    expected_version: int | None = Field(default=None, ge=0)


class PlaceRequest(CamelModel):
    session_id: int
    slot: SlotRef | None = None
    expected_version: int | None = Field(default=None, ge=0)


class UnplaceRequest(CamelModel):
    slot: SlotRef
    session_id: int | None = None
    expected_version: int | None = Field(default=None, ge=0)


class PinRequest(CamelModel):
    slot: SlotRef
    pinned: bool = True


class AssignmentEntryOut(CamelModel):
    room_id: int
    timeslot_id: int
    session_id: int | None = None
    title: str | None = None
    votes: int | None = None
    pinned: bool = False


class UnassignedSessionOut(CamelModel):
    id: int
    title: str
    votes: int
    tag: str | None = None


class ScheduleOut(CamelModel):
    version: int
    rooms: list[RoomOut]
    timeslots: list[TimeslotOut]
    assignments: list[AssignmentEntryOut]
    unassigned: list[UnassignedSessionOut]
    total_votes: int


class OptimizationReportOut(CamelModel):
    passes: int
    improvements: int
    total_votes: int
    clash_penalty: int
    stopped_by: Literal["local_optimum", "pass_budget", "time_budget"]
    elapsed_ms: float


class GenerateResponse(CamelModel):
    schedule: ScheduleOut
    report: OptimizationReportOut


class MutationResponse(CamelModel):
    action: str
    version: int
    touched: list[AssignmentEntryOut]
    details: dict = Field(default_factory=dict)

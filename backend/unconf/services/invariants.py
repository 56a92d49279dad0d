from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from unconf.core.exceptions import InvariantViolationError, NotFoundError, SlotBlockedError
from unconf.services.assignment_model import (
    AssignmentEntry,
    CatalogSnapshot,
    RoomInfo,
    SessionInfo,
    Slot,
    TimeslotInfo,
)

logger = logging.getLogger(__name__)


class ViolationKind(str, Enum):
    duplicate_slot = "duplicate_slot"
    duplicate_session = "duplicate_session"
    blocked_slot = "blocked_slot"
    dangling_reference = "dangling_reference"


@dataclass(frozen=True)
class Violation:
    kind: ViolationKind
    message: str
    slot: Slot | None = None
    session_id: int | None = None
    # For dangling references: which catalog the missing id belongs to.
    resource_type: str | None = None
    resource_id: int | None = None


def validate(
    entries: Iterable[AssignmentEntry],
    rooms: Iterable[RoomInfo],
    timeslots: Iterable[TimeslotInfo],
    sessions: Iterable[SessionInfo],
) -> list[Violation]:
    """Check a candidate assignment against the four structural invariants.

    Returns every violation found, in entry order; an empty list means the
    candidate may be committed. Pure: reads its arguments and nothing else.
    """
    room_ids = {room.id for room in rooms}
    timeslot_by_id = {timeslot.id: timeslot for timeslot in timeslots}
    session_ids = {session.id for session in sessions}

    violations: list[Violation] = []
    seen_slots: set[Slot] = set()
    seen_sessions: set[int] = set()

    for entry in entries:
        slot = entry.slot
        if slot.room_id not in room_ids:
            violations.append(
                Violation(
                    kind=ViolationKind.dangling_reference,
                    message=f"Room {slot.room_id} does not exist",
                    slot=slot,
                    session_id=entry.session_id,
                    resource_type="room",
                    resource_id=slot.room_id,
                )
            )
        timeslot = timeslot_by_id.get(slot.timeslot_id)
        if timeslot is None:
            violations.append(
                Violation(
                    kind=ViolationKind.dangling_reference,
                    message=f"Timeslot {slot.timeslot_id} does not exist",
                    slot=slot,
                    session_id=entry.session_id,
                    resource_type="timeslot",
                    resource_id=slot.timeslot_id,
                )
            )
        elif timeslot.is_blocked:
            violations.append(
                Violation(
                    kind=ViolationKind.blocked_slot,
                    message=f"Timeslot {slot.timeslot_id} is blocked: {timeslot.blocked_reason}",
                    slot=slot,
                    session_id=entry.session_id,
                )
            )
        if entry.session_id not in session_ids:
            violations.append(
                Violation(
                    kind=ViolationKind.dangling_reference,
                    message=f"Session {entry.session_id} does not exist",
                    slot=slot,
                    session_id=entry.session_id,
                    resource_type="session",
                    resource_id=entry.session_id,
                )
            )

        if slot in seen_slots:
            violations.append(
                Violation(
                    kind=ViolationKind.duplicate_slot,
                    message=f"Slot (room {slot.room_id}, timeslot {slot.timeslot_id}) holds more than one session",
                    slot=slot,
                    session_id=entry.session_id,
                )
            )
        seen_slots.add(slot)

        if entry.session_id in seen_sessions:
            violations.append(
                Violation(
                    kind=ViolationKind.duplicate_session,
                    message=f"Session {entry.session_id} is placed in more than one slot",
                    slot=slot,
                    session_id=entry.session_id,
                )
            )
        seen_sessions.add(entry.session_id)

    return violations


def validate_against(entries: Iterable[AssignmentEntry], catalog: CatalogSnapshot) -> list[Violation]:
    return validate(entries, catalog.rooms, catalog.timeslots, catalog.sessions)


def ensure_valid(entries: Iterable[AssignmentEntry], catalog: CatalogSnapshot) -> None:
    """Raise the caller-facing error for the first violation, if any."""
    violations = validate_against(entries, catalog)
    if not violations:
        return

    for violation in violations:
        if violation.kind == ViolationKind.dangling_reference:
            raise NotFoundError(violation.resource_type, violation.resource_id, message=violation.message)
    for violation in violations:
        if violation.kind == ViolationKind.blocked_slot:
            timeslot = catalog.timeslot_by_id[violation.slot.timeslot_id]
            raise SlotBlockedError(timeslot.id, timeslot.blocked_reason)

    logger.error(
        "Mutation produced an invalid assignment: %s",
        "; ".join(violation.message for violation in violations),
    )
    raise InvariantViolationError(
        "Rejected a transition that would break the assignment invariants",
        details={"violations": [{"kind": v.kind.value, "message": v.message} for v in violations]},
    )

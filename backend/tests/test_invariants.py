import pytest

from unconf.core.exceptions import InvariantViolationError, NotFoundError, SlotBlockedError
from unconf.services.assignment_model import (
    AssignmentEntry,
    CatalogSnapshot,
    RoomInfo,
    SessionInfo,
    Slot,
    TimeslotInfo,
)
from unconf.services.invariants import ViolationKind, ensure_valid, validate, validate_against

ROOMS = (RoomInfo(id=1, name="Main Hall"), RoomInfo(id=2, name="Side Room"))
TIMESLOTS = (
    TimeslotInfo(id=1, start_minutes=540, end_minutes=600),
    TimeslotInfo(id=2, start_minutes=600, end_minutes=660, blocked_reason="Keynote"),
)
SESSIONS = (SessionInfo(id=1, title="Intro", votes=3), SessionInfo(id=2, title="Deep dive", votes=5))
CATALOG = CatalogSnapshot(rooms=ROOMS, timeslots=TIMESLOTS, sessions=SESSIONS)


def entry(room_id, timeslot_id, session_id):
    return AssignmentEntry(slot=Slot(room_id, timeslot_id), session_id=session_id)


def test_valid_assignment_has_no_violations():
    assert validate([entry(1, 1, 1), entry(2, 1, 2)], ROOMS, TIMESLOTS, SESSIONS) == []
    assert validate([], ROOMS, TIMESLOTS, SESSIONS) == []


def test_duplicate_slot_is_reported():
    violations = validate_against([entry(1, 1, 1), entry(1, 1, 2)], CATALOG)
    assert [item.kind for item in violations] == [ViolationKind.duplicate_slot]


def test_duplicate_session_is_reported():
    violations = validate_against([entry(1, 1, 1), entry(2, 1, 1)], CATALOG)
    assert [item.kind for item in violations] == [ViolationKind.duplicate_session]


def test_blocked_slot_is_reported():
    violations = validate_against([entry(1, 2, 1)], CATALOG)
    assert [item.kind for item in violations] == [ViolationKind.blocked_slot]


def test_dangling_references_name_the_missing_resource():
    violations = validate_against([entry(7, 9, 42)], CATALOG)

    assert {item.kind for item in violations} == {ViolationKind.dangling_reference}
    assert {(item.resource_type, item.resource_id) for item in violations} == {
        ("room", 7),
        ("timeslot", 9),
        ("session", 42),
    }


def test_validate_does_not_mutate_its_inputs():
    entries = [entry(1, 1, 1), entry(1, 1, 2)]
    validate_against(entries, CATALOG)
    assert entries == [entry(1, 1, 1), entry(1, 1, 2)]


def test_ensure_valid_maps_violations_to_errors():
    ensure_valid([entry(1, 1, 1)], CATALOG)

    with pytest.raises(NotFoundError) as missing:
        ensure_valid([entry(1, 1, 42)], CATALOG)
    assert missing.value.details == {"resource_type": "session", "resource_id": 42}

    with pytest.raises(SlotBlockedError) as blocked:
        ensure_valid([entry(2, 2, 1)], CATALOG)
    assert blocked.value.details == {"timeslot_id": 2, "reason": "Keynote"}

    with pytest.raises(InvariantViolationError):
        ensure_valid([entry(1, 1, 1), entry(2, 1, 1)], CATALOG)

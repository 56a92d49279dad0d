import pytest
from sqlalchemy import select

from unconf.core.exceptions import ConflictError, NotFoundError, PermissionDeniedError, SlotBlockedError
from unconf.models.activity_log import ActivityLog
from unconf.models.room import Room
from unconf.models.user import UserRole
from unconf.schemas.room import RoomCreate, RoomUpdate
from unconf.schemas.session import TalkSessionCreate
from unconf.schemas.timeslot import BlockedPayload, TimeslotCreate, TimeslotUpdate
from unconf.services.assignment_model import AssignmentEntry, Slot
from unconf.services.optimizer import ScheduleOptimizer


def placements(engine, db):
    return {entry.session_id: entry.slot for entry in engine.get_schedule(db).assignment}


def test_generate_places_sessions_by_votes(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    outcome = schedule_engine.generate(db, facilitator)

    r1, r2, r3 = ids.rooms
    t1, t2 = ids.timeslots
    s10, s7a, s7b, s1 = ids.sessions
    assert placements(schedule_engine, db) == {
        s10: Slot(r1, t1),
        s7a: Slot(r2, t1),
        s7b: Slot(r3, t1),
        s1: Slot(r1, t2),
    }
    assert outcome.version == 1
    assert outcome.report.total_votes == 25
    assert outcome.view.assignment.unassigned_sessions(outcome.view.catalog) == []

    log = db.execute(select(ActivityLog).where(ActivityLog.action == "schedule.generate")).scalar_one()
    assert log.user_id == facilitator.id
    assert log.schedule_version == 1


def test_generate_is_repeatable(db, schedule_engine, facilitator, seed_catalog):
    seed_catalog(votes=(4, 9, 1, 9, 3, 0, 12, 7))
    schedule_engine.generate(db, facilitator)
    first = schedule_engine.get_schedule(db).assignment
    schedule_engine.generate(db, facilitator)
    second = schedule_engine.get_schedule(db).assignment

    assert first == second
    assert second.version == 2


def test_moving_the_last_session_into_an_empty_slot_touches_two_slots(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    s1 = ids.sessions[3]
    source = Slot(ids.rooms[0], ids.timeslots[1])
    target = Slot(ids.rooms[2], ids.timeslots[1])

    outcome = schedule_engine.move(db, facilitator, source, target, expected_session_id=s1, expected_version=1)

    assert outcome.action == "move"
    assert outcome.version == 2
    assert [(item.slot, item.session_id) for item in outcome.touched] == [(source, None), (target, s1)]
    after = placements(schedule_engine, db)
    assert after[s1] == target
    assert len(after) == 4


def test_move_onto_an_occupied_slot_swaps(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    s10, s7a = ids.sessions[0], ids.sessions[1]
    a = Slot(ids.rooms[0], ids.timeslots[0])
    b = Slot(ids.rooms[1], ids.timeslots[0])

    outcome = schedule_engine.move(db, facilitator, a, b)

    assert outcome.action == "swap"
    after = placements(schedule_engine, db)
    assert after[s10] == b
    assert after[s7a] == a


def test_move_into_a_blocked_timeslot_is_rejected(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog(times=(("09:00", "10:00"), ("10:00", "11:00"), ("12:00", "13:00")), blocked={2: "Lunch"})
    schedule_engine.generate(db, facilitator)
    before = schedule_engine.get_schedule(db).assignment

    with pytest.raises(SlotBlockedError) as exc:
        schedule_engine.move(db, facilitator, Slot(ids.rooms[0], ids.timeslots[0]), Slot(ids.rooms[0], ids.timeslots[2]))

    assert exc.value.details["reason"] == "Lunch"
    after = schedule_engine.get_schedule(db).assignment
    assert after == before
    assert after.version == before.version


def test_move_from_an_empty_slot_is_not_found(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)

    with pytest.raises(NotFoundError):
        schedule_engine.move(db, facilitator, Slot(ids.rooms[2], ids.timeslots[1]), Slot(ids.rooms[1], ids.timeslots[1]))

    with pytest.raises(NotFoundError) as missing_room:
        schedule_engine.move(db, facilitator, Slot(ids.rooms[0], ids.timeslots[0]), Slot(999, ids.timeslots[0]))
    assert missing_room.value.details["resource_type"] == "room"


def test_move_with_outdated_expectations_conflicts(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    source = Slot(ids.rooms[0], ids.timeslots[0])
    target = Slot(ids.rooms[2], ids.timeslots[1])

    with pytest.raises(ConflictError) as moved:
        schedule_engine.move(db, facilitator, source, target, expected_session_id=ids.sessions[3])
    assert moved.value.details["reason"] == "session_moved"

    with pytest.raises(ConflictError) as stale:
        schedule_engine.move(db, facilitator, source, target, expected_version=0)
    assert stale.value.details == {"reason": "stale", "expected_version": 0, "current_version": 1}


def test_move_onto_itself_is_a_noop(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    slot = Slot(ids.rooms[0], ids.timeslots[0])

    outcome = schedule_engine.move(db, facilitator, slot, slot)

    assert outcome.version == 1
    assert outcome.details == {"noop": True}
    assert schedule_engine.get_schedule(db).assignment.version == 1


def test_viewers_cannot_change_the_schedule(db, schedule_engine, facilitator, viewer, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    a = Slot(ids.rooms[0], ids.timeslots[0])
    b = Slot(ids.rooms[1], ids.timeslots[0])

    attempts = [
        lambda: schedule_engine.generate(db, viewer),
        lambda: schedule_engine.clear(db, viewer),
        lambda: schedule_engine.move(db, viewer, a, b),
        lambda: schedule_engine.swap(db, viewer, a, b),
        lambda: schedule_engine.unplace(db, viewer, a),
        lambda: schedule_engine.set_pinned(db, viewer, a, True),
        lambda: schedule_engine.add_room(db, viewer, RoomCreate(name="Attic")),
        lambda: schedule_engine.remove_room(db, viewer, ids.rooms[0]),
        lambda: schedule_engine.remove_timeslot(db, viewer, ids.timeslots[0]),
    ]
    for attempt in attempts:
        with pytest.raises(PermissionDeniedError):
            attempt()

    assert schedule_engine.get_schedule(db).assignment.version == 1


def test_inactive_editor_is_denied(db, schedule_engine, make_user, seed_catalog):
    seed_catalog()
    inactive = make_user(UserRole.admin, is_active=False)

    with pytest.raises(PermissionDeniedError):
        schedule_engine.generate(db, inactive)


def test_swap_requires_two_occupied_slots(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    a = Slot(ids.rooms[0], ids.timeslots[0])
    b = Slot(ids.rooms[0], ids.timeslots[1])
    empty = Slot(ids.rooms[2], ids.timeslots[1])

    outcome = schedule_engine.swap(db, facilitator, a, b, expected_version=1)
    assert [(item.slot, item.session_id) for item in outcome.touched] == [(a, ids.sessions[3]), (b, ids.sessions[0])]

    with pytest.raises(NotFoundError):
        schedule_engine.swap(db, facilitator, a, empty)


def test_place_uses_the_first_free_slot(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog(votes=(5,))
    outcome = schedule_engine.place(db, facilitator, ids.sessions[0])

    assert outcome.touched[0].slot == Slot(ids.rooms[0], ids.timeslots[0])

    with pytest.raises(ConflictError) as again:
        schedule_engine.place(db, facilitator, ids.sessions[0])
    assert again.value.details["reason"] == "already_scheduled"

    with pytest.raises(NotFoundError):
        schedule_engine.place(db, facilitator, 999)


def test_place_into_an_occupied_or_full_schedule_conflicts(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog(room_names=("Only Room",), times=(("09:00", "10:00"),), votes=(3, 2))
    slot = Slot(ids.rooms[0], ids.timeslots[0])
    schedule_engine.place(db, facilitator, ids.sessions[0], slot)

    with pytest.raises(ConflictError) as occupied:
        schedule_engine.place(db, facilitator, ids.sessions[1], slot)
    assert occupied.value.details["reason"] == "slot_occupied"

    with pytest.raises(ConflictError) as full:
        schedule_engine.place(db, facilitator, ids.sessions[1])
    assert full.value.details["reason"] == "schedule_full"


def test_place_into_a_blocked_timeslot_is_rejected(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog(votes=(5,), blocked={1: "Lunch"})
    target = Slot(ids.rooms[0], ids.timeslots[1])

    with pytest.raises(SlotBlockedError):
        schedule_engine.place(db, facilitator, ids.sessions[0], target)

    view = schedule_engine.get_schedule(db)
    assert len(view.assignment) == 0
    assert view.assignment.version == 0


def test_colliding_insert_rolls_back_as_a_constraint_conflict(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    before = list(schedule_engine.get_schedule(db).assignment)
    empty = Slot(ids.rooms[2], ids.timeslots[1])
    store = schedule_engine.store

    with pytest.raises(ConflictError) as collision:
        with store.exclusive(db):
            store.bump_version(db, facilitator.id)
            # Session 1 already sits in another slot.
            store.apply(db, additions=[AssignmentEntry(slot=empty, session_id=ids.sessions[0])])
    assert collision.value.details["reason"] == "constraint"

    after = schedule_engine.get_schedule(db).assignment
    assert list(after) == before
    assert after.version == 1
    assert after.session_at(empty) is None


def test_unplace_empties_the_slot(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    slot = Slot(ids.rooms[0], ids.timeslots[0])

    outcome = schedule_engine.unplace(db, facilitator, slot, expected_session_id=ids.sessions[0])

    assert outcome.details == {"session_id": ids.sessions[0]}
    assert ids.sessions[0] not in placements(schedule_engine, db)
    with pytest.raises(NotFoundError):
        schedule_engine.unplace(db, facilitator, slot)


def test_pinned_sessions_survive_regeneration_and_travel_on_move(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    s1 = ids.sessions[3]
    home = Slot(ids.rooms[0], ids.timeslots[1])
    corner = Slot(ids.rooms[2], ids.timeslots[1])

    schedule_engine.set_pinned(db, facilitator, home, True)
    moved = schedule_engine.move(db, facilitator, home, corner)
    assert moved.touched[-1].pinned is True

    schedule_engine.generate(db, facilitator)
    view = schedule_engine.get_schedule(db)
    assert view.assignment.by_slot[corner].session_id == s1
    assert view.assignment.by_slot[corner].pinned is True
    assert view.assignment.total_votes(view.catalog) == 25


def test_clear_removes_everything_including_pins(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)
    schedule_engine.set_pinned(db, facilitator, Slot(ids.rooms[0], ids.timeslots[0]), True)

    outcome = schedule_engine.clear(db, facilitator)

    assert len(outcome.touched) == 4
    assert len(schedule_engine.get_schedule(db).assignment) == 0


def test_removing_a_room_cascades_to_exactly_its_assignments(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)

    outcome = schedule_engine.remove_room(db, facilitator, ids.rooms[0])

    assert sorted(outcome.details["unscheduled"]) == sorted([ids.sessions[0], ids.sessions[3]])
    after = placements(schedule_engine, db)
    assert set(after) == {ids.sessions[1], ids.sessions[2]}
    assert db.get(Room, ids.rooms[0]) is None


def test_blocking_a_timeslot_unschedules_its_sessions(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)

    timeslot, outcome = schedule_engine.update_timeslot(
        db, facilitator, ids.timeslots[0], TimeslotUpdate(blocked=BlockedPayload(reason="Keynote"))
    )

    assert timeslot.blocked_reason == "Keynote"
    assert sorted(outcome.details["unscheduled"]) == sorted(ids.sessions[:3])
    assert set(placements(schedule_engine, db)) == {ids.sessions[3]}

    with pytest.raises(SlotBlockedError):
        schedule_engine.place(db, facilitator, ids.sessions[0], Slot(ids.rooms[0], ids.timeslots[0]))


def test_removing_a_timeslot_cascades(db, schedule_engine, facilitator, seed_catalog):
    ids = seed_catalog()
    schedule_engine.generate(db, facilitator)

    outcome = schedule_engine.remove_timeslot(db, facilitator, ids.timeslots[1])

    assert outcome.details["unscheduled"] == [ids.sessions[3]]
    assert len(schedule_engine.get_schedule(db).assignment) == 3


def test_session_lifecycle(db, schedule_engine, facilitator, make_user, seed_catalog):
    seed_catalog(votes=())
    proposer = make_user(UserRole.viewer)
    stranger = make_user(UserRole.viewer)

    talk = schedule_engine.add_session(db, proposer, TalkSessionCreate(title="  Unconference 101 ", tag="Intro"))
    assert talk.title == "Unconference 101"
    assert talk.tag == "intro"
    assert talk.votes == 0
    assert talk.owner_id == proposer.id
    talk_id = talk.id

    schedule_engine.place(db, facilitator, talk_id)
    with pytest.raises(PermissionDeniedError):
        schedule_engine.remove_session(db, stranger, talk_id)

    outcome = schedule_engine.remove_session(db, proposer, talk_id)
    assert outcome.details["unscheduled"] == [talk_id]
    assert len(schedule_engine.get_schedule(db).assignment) == 0


def test_withdrawing_a_missing_session_is_denied_before_lookup_for_non_editors(
    db, schedule_engine, facilitator, viewer, make_user
):
    inactive = make_user(UserRole.viewer, is_active=False)

    for actor in (viewer, inactive):
        with pytest.raises(PermissionDeniedError):
            schedule_engine.remove_session(db, actor, 999)
    with pytest.raises(NotFoundError):
        schedule_engine.remove_session(db, facilitator, 999)


def test_room_catalog_edits(db, schedule_engine, facilitator):
    room = schedule_engine.add_room(db, facilitator, RoomCreate(name="Atrium", location="Level 2", available_spots=80))
    assert room.id is not None

    with pytest.raises(ConflictError) as duplicate:
        schedule_engine.add_room(db, facilitator, RoomCreate(name="Atrium"))
    assert duplicate.value.details["reason"] == "duplicate_name"

    updated = schedule_engine.update_room(db, facilitator, room.id, RoomUpdate(available_spots=120))
    assert updated.available_spots == 120
    assert updated.name == "Atrium"

    with pytest.raises(NotFoundError):
        schedule_engine.update_room(db, facilitator, 999, RoomUpdate(name="Nowhere"))


def test_timeslot_catalog_edits(db, schedule_engine, facilitator):
    timeslot = schedule_engine.add_timeslot(db, facilitator, TimeslotCreate(start_time="14:00", duration_minutes=45))
    assert timeslot.end_time == "14:45"
    assert timeslot.blocked_reason is None

    updated, outcome = schedule_engine.update_timeslot(db, facilitator, timeslot.id, TimeslotUpdate(end_time="15:30"))
    assert updated.end_time == "15:30"
    assert outcome.touched == ()

    blocked, _ = schedule_engine.update_timeslot(
        db, facilitator, timeslot.id, TimeslotUpdate(blocked=BlockedPayload(reason="Lunch"))
    )
    assert blocked.blocked_reason == "Lunch"
    unblocked, _ = schedule_engine.update_timeslot(db, facilitator, timeslot.id, TimeslotUpdate(unblock=True))
    assert unblocked.blocked_reason is None


def test_generate_rejects_a_catalog_that_changed_mid_computation(db, schedule_engine, facilitator, seed_catalog):
    seed_catalog()

    class CatalogChangingOptimizer(ScheduleOptimizer):
        def run(self):
            db.add(Room(name="Pop-up Room"))
            db.commit()
            return super().run()

    schedule_engine._optimizer_factory = CatalogChangingOptimizer

    with pytest.raises(ConflictError) as exc:
        schedule_engine.generate(db, facilitator)

    assert exc.value.details["reason"] == "stale_catalog"
    assert len(schedule_engine.get_schedule(db).assignment) == 0


def test_newer_generate_request_supersedes_an_older_one(db, schedule_engine, facilitator, seed_catalog):
    seed_catalog()
    calls = []

    class InterruptedOptimizer(ScheduleOptimizer):
        def run(self):
            calls.append(self)
            if len(calls) == 1:
                # A second request arrives while the first is still computing.
                schedule_engine.generate(db, facilitator)
            return super().run()

    schedule_engine._optimizer_factory = InterruptedOptimizer

    with pytest.raises(ConflictError) as exc:
        schedule_engine.generate(db, facilitator)

    assert exc.value.details["reason"] == "superseded"
    assignment = schedule_engine.get_schedule(db).assignment
    assert len(assignment) == 4
    assert assignment.version == 1

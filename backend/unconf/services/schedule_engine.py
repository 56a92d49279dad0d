"""Role-checked, atomic edits of the schedule and its catalog.

Every mutator takes the acting user and a database session, re-checks the
role, then validates and commits under the store lock. A rejected request
leaves both the database and the in-memory state untouched.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import lru_cache

from sqlalchemy import select
from sqlalchemy.orm import Session

from unconf.core.config import get_settings
from unconf.core.exceptions import (
    CatalogValidationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ScheduleError,
    SlotBlockedError,
)
from unconf.models.room import Room
from unconf.models.session import TalkSession
from unconf.models.timeslot import Timeslot
from unconf.models.user import User
from unconf.schemas.room import RoomCreate, RoomUpdate
from unconf.schemas.session import TalkSessionCreate
from unconf.schemas.timeslot import TimeslotCreate, TimeslotUpdate, parse_time_to_minutes
from unconf.services.assignment_model import (
    Assignment,
    AssignmentEntry,
    CatalogSnapshot,
    ScheduleView,
    Slot,
)
from unconf.services.assignment_store import (
    AssignmentStore,
    load_assignment,
    load_catalog,
    load_snapshot,
    load_version,
)
from unconf.services.audit import log_activity
from unconf.services.invariants import ensure_valid
from unconf.services.optimizer import (
    OptimizationCancelled,
    OptimizationReport,
    OptimizerSettings,
    ScheduleOptimizer,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TouchedSlot:
    """State of one slot after a mutation; ``session_id`` is None when it was emptied."""

    slot: Slot
    session_id: int | None
    pinned: bool = False


@dataclass(frozen=True)
class MutationOutcome:
    action: str
    version: int
    touched: tuple[TouchedSlot, ...] = ()
    details: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GenerateOutcome:
    version: int
    view: ScheduleView
    report: OptimizationReport


def _apply_changes(
    entries: Iterable[AssignmentEntry],
    removals: Iterable[Slot],
    additions: Iterable[AssignmentEntry],
) -> list[AssignmentEntry]:
    removed = set(removals)
    return [entry for entry in entries if entry.slot not in removed] + list(additions)


class ScheduleEngine:
    def __init__(
        self,
        store: AssignmentStore | None = None,
        settings: OptimizerSettings | None = None,
        optimizer_factory=ScheduleOptimizer,
    ) -> None:
        self.store = store or AssignmentStore()
        self.settings = settings or OptimizerSettings()
        self._optimizer_factory = optimizer_factory
        self._ticket_lock = threading.Lock()
        self._latest_generation = 0

    # Reads

    def get_schedule(self, db: Session) -> ScheduleView:
        """Committed state only; never waits for a writer."""
        catalog, assignment = load_snapshot(db)
        return ScheduleView(catalog=catalog, assignment=assignment)

    # Generation

    def _begin_generation(self) -> int:
        with self._ticket_lock:
            self._latest_generation += 1
            return self._latest_generation

    def _superseded(self, ticket: int) -> bool:
        with self._ticket_lock:
            return ticket != self._latest_generation

    def generate(self, db: Session, actor: User) -> GenerateOutcome:
        self._require_editor(actor, "generate")
        actor_id = actor.id
        ticket = self._begin_generation()
        with self._attempt("generate", actor_id, ticket=ticket):
            catalog, snapshot = load_snapshot(db)
            pinned = snapshot.pinned_entries()

            optimizer = self._optimizer_factory(
                catalog,
                pinned=pinned,
                settings=self.settings,
                should_cancel=lambda: self._superseded(ticket),
            )
            try:
                assignment, report = optimizer.run()
            except OptimizationCancelled as exc:
                raise ConflictError("A newer generate request superseded this one", reason="superseded") from exc

            with self.store.exclusive(db):
                if self._superseded(ticket):
                    raise ConflictError("A newer generate request superseded this one", reason="superseded")
                fresh_catalog = load_catalog(db)
                fresh_pins = load_assignment(db).pinned_entries()
                if fresh_catalog.fingerprint() != catalog.fingerprint() or set(fresh_pins) != set(pinned):
                    raise ConflictError(
                        "Rooms, timeslots, sessions or pins changed while the schedule was being computed",
                        reason="stale_catalog",
                    )
                ensure_valid(assignment.entries, fresh_catalog)
                removed = self.store.replace_all(db, assignment.entries)
                version = self.store.bump_version(db, actor_id)
                log_activity(
                    db,
                    user=actor,
                    action="schedule.generate",
                    entity_type="schedule",
                    schedule_version=version,
                    details={
                        "placed": len(assignment),
                        "replaced": removed,
                        "pinned": len(pinned),
                        "total_votes": report.total_votes,
                        "stopped_by": report.stopped_by,
                    },
                )

        return GenerateOutcome(
            version=version,
            view=ScheduleView(catalog=fresh_catalog, assignment=Assignment(assignment.entries, version=version)),
            report=report,
        )

    def clear(self, db: Session, actor: User) -> MutationOutcome:
        self._require_editor(actor, "clear")
        with self._attempt("clear", actor.id):
            with self.store.exclusive(db):
                current = load_assignment(db)
                self.store.replace_all(db, [])
                version = self._record(db, actor, "schedule.clear", details={"removed": len(current)})
        return MutationOutcome(
            action="clear",
            version=version,
            touched=tuple(TouchedSlot(entry.slot, None) for entry in current),
        )

    # Point edits

    def move(
        self,
        db: Session,
        actor: User,
        from_slot: Slot,
        to_slot: Slot,
        *,
        expected_session_id: int | None = None,
        expected_version: int | None = None,
    ) -> MutationOutcome:
        """Move the session at ``from_slot``; an occupied target turns the move into a swap."""
        self._require_editor(actor, "move")
        with self._attempt("move", actor.id, source=from_slot, target=to_slot):
            with self.store.exclusive(db):
                self._check_version(db, expected_version)
                catalog = load_catalog(db)
                current = load_assignment(db)
                self._check_target(catalog, to_slot)
                source = self._expect_entry(current, from_slot, expected_session_id)

                if from_slot == to_slot:
                    return MutationOutcome(
                        action="move",
                        version=current.version,
                        touched=(TouchedSlot(source.slot, source.session_id, source.pinned),),
                        details={"noop": True},
                    )

                target = current.by_slot.get(to_slot)
                additions = [AssignmentEntry(slot=to_slot, session_id=source.session_id, pinned=source.pinned)]
                if target is not None:
                    additions.append(
                        AssignmentEntry(slot=from_slot, session_id=target.session_id, pinned=target.pinned)
                    )
                version = self._commit_transition(
                    db,
                    actor,
                    "schedule.move",
                    current,
                    catalog,
                    removals=[from_slot, to_slot] if target is not None else [from_slot],
                    additions=additions,
                    details={
                        "session_id": source.session_id,
                        "from": from_slot.as_dict(),
                        "to": to_slot.as_dict(),
                        "swapped_with": target.session_id if target is not None else None,
                    },
                )

        touched = [TouchedSlot(to_slot, source.session_id, source.pinned)]
        if target is not None:
            touched.insert(0, TouchedSlot(from_slot, target.session_id, target.pinned))
        else:
            touched.insert(0, TouchedSlot(from_slot, None))
        return MutationOutcome(
            action="swap" if target is not None else "move",
            version=version,
            touched=tuple(touched),
        )

    def swap(
        self,
        db: Session,
        actor: User,
        slot_a: Slot,
        slot_b: Slot,
        *,
        expected_version: int | None = None,
    ) -> MutationOutcome:
        self._require_editor(actor, "swap")
        with self._attempt("swap", actor.id, slot_a=slot_a, slot_b=slot_b):
            with self.store.exclusive(db):
                self._check_version(db, expected_version)
                catalog = load_catalog(db)
                current = load_assignment(db)
                self._check_target(catalog, slot_a)
                self._check_target(catalog, slot_b)
                first = self._expect_entry(current, slot_a, None)
                second = self._expect_entry(current, slot_b, None)

                if slot_a == slot_b:
                    return MutationOutcome(
                        action="swap",
                        version=current.version,
                        touched=(TouchedSlot(first.slot, first.session_id, first.pinned),),
                        details={"noop": True},
                    )

                version = self._commit_transition(
                    db,
                    actor,
                    "schedule.swap",
                    current,
                    catalog,
                    removals=[slot_a, slot_b],
                    additions=[
                        AssignmentEntry(slot=slot_a, session_id=second.session_id, pinned=second.pinned),
                        AssignmentEntry(slot=slot_b, session_id=first.session_id, pinned=first.pinned),
                    ],
                    details={
                        "slot_a": slot_a.as_dict(),
                        "slot_b": slot_b.as_dict(),
                        "sessions": [first.session_id, second.session_id],
                    },
                )

        return MutationOutcome(
            action="swap",
            version=version,
            touched=(
                TouchedSlot(slot_a, second.session_id, second.pinned),
                TouchedSlot(slot_b, first.session_id, first.pinned),
            ),
        )

    def place(
        self,
        db: Session,
        actor: User,
        session_id: int,
        slot: Slot | None = None,
        *,
        expected_version: int | None = None,
    ) -> MutationOutcome:
        """Put an unscheduled session into ``slot``, or the first free slot in canonical order."""
        self._require_editor(actor, "place")
        with self._attempt("place", actor.id, session_id=session_id, slot=slot):
            with self.store.exclusive(db):
                self._check_version(db, expected_version)
                catalog = load_catalog(db)
                current = load_assignment(db)
                if session_id not in catalog.session_by_id:
                    raise NotFoundError("session", session_id)
                existing = current.slot_of(session_id)
                if existing is not None:
                    raise ConflictError(
                        f"Session {session_id} is already scheduled",
                        reason="already_scheduled",
                        details={"slot": existing.as_dict()},
                    )

                if slot is None:
                    slot = next((item for item in catalog.eligible_slots if item not in current.by_slot), None)
                    if slot is None:
                        raise ConflictError("Every eligible slot is taken", reason="schedule_full")
                else:
                    self._check_target(catalog, slot)
                    if slot in current.by_slot:
                        raise ConflictError(
                            "Target slot is already occupied",
                            reason="slot_occupied",
                            details={"session_id": current.session_at(slot)},
                        )

                version = self._commit_transition(
                    db,
                    actor,
                    "schedule.place",
                    current,
                    catalog,
                    removals=[],
                    additions=[AssignmentEntry(slot=slot, session_id=session_id)],
                    details={"session_id": session_id, "slot": slot.as_dict()},
                )

        return MutationOutcome(action="place", version=version, touched=(TouchedSlot(slot, session_id),))

    def unplace(
        self,
        db: Session,
        actor: User,
        slot: Slot,
        *,
        expected_session_id: int | None = None,
        expected_version: int | None = None,
    ) -> MutationOutcome:
        self._require_editor(actor, "unplace")
        with self._attempt("unplace", actor.id, slot=slot):
            with self.store.exclusive(db):
                self._check_version(db, expected_version)
                catalog = load_catalog(db)
                current = load_assignment(db)
                entry = self._expect_entry(current, slot, expected_session_id)
                version = self._commit_transition(
                    db,
                    actor,
                    "schedule.unplace",
                    current,
                    catalog,
                    removals=[slot],
                    additions=[],
                    details={"session_id": entry.session_id, "slot": slot.as_dict()},
                )

        return MutationOutcome(
            action="unplace",
            version=version,
            touched=(TouchedSlot(slot, None),),
            details={"session_id": entry.session_id},
        )

    def set_pinned(self, db: Session, actor: User, slot: Slot, pinned: bool) -> MutationOutcome:
        self._require_editor(actor, "pin")
        with self._attempt("pin", actor.id, slot=slot, pinned=pinned):
            with self.store.exclusive(db):
                current = load_assignment(db)
                entry = self._expect_entry(current, slot, None)
                if entry.pinned == pinned:
                    return MutationOutcome(
                        action="pin",
                        version=current.version,
                        touched=(TouchedSlot(slot, entry.session_id, pinned),),
                        details={"noop": True},
                    )
                self.store.set_pinned(db, slot, pinned)
                version = self._record(
                    db,
                    actor,
                    "schedule.pin" if pinned else "schedule.unpin",
                    details={"session_id": entry.session_id, "slot": slot.as_dict()},
                )

        return MutationOutcome(action="pin", version=version, touched=(TouchedSlot(slot, entry.session_id, pinned),))

    # Rooms

    def add_room(self, db: Session, actor: User, payload: RoomCreate) -> Room:
        self._require_editor(actor, "add_room")
        with self._attempt("add_room", actor.id, name=payload.name):
            with self.store.exclusive(db):
                self._ensure_unique_room_name(db, payload.name)
                room = Room(**payload.model_dump())
                db.add(room)
                db.flush()
                self._record(db, actor, "room.create", entity_type="room", entity_id=room.id)
        db.refresh(room)
        return room

    def update_room(self, db: Session, actor: User, room_id: int, payload: RoomUpdate) -> Room:
        self._require_editor(actor, "update_room")
        with self._attempt("update_room", actor.id, room_id=room_id):
            with self.store.exclusive(db):
                room = db.get(Room, room_id)
                if room is None:
                    raise NotFoundError("room", room_id)
                changes = payload.model_dump(exclude_unset=True, exclude_none=True)
                if "name" in changes:
                    changes["name"] = changes["name"].strip()
                    if not changes["name"]:
                        raise CatalogValidationError("Room name cannot be empty")
                    if changes["name"] != room.name:
                        self._ensure_unique_room_name(db, changes["name"])
                for key, value in changes.items():
                    setattr(room, key, value)
                db.flush()
                self._record(
                    db, actor, "room.update", entity_type="room", entity_id=room_id, details={"fields": sorted(changes)}
                )
        db.refresh(room)
        return room

    def remove_room(self, db: Session, actor: User, room_id: int) -> MutationOutcome:
        self._require_editor(actor, "remove_room")
        with self._attempt("remove_room", actor.id, room_id=room_id):
            with self.store.exclusive(db):
                room = db.get(Room, room_id)
                if room is None:
                    raise NotFoundError("room", room_id)
                removed = self.store.remove_where(db, room_id=room_id)
                db.delete(room)
                db.flush()
                version = self._record(
                    db,
                    actor,
                    "room.delete",
                    entity_type="room",
                    entity_id=room_id,
                    details={"unscheduled": [entry.session_id for entry in removed]},
                )
        return self._cascade_outcome("remove_room", version, removed)

    # Timeslots

    def add_timeslot(self, db: Session, actor: User, payload: TimeslotCreate) -> Timeslot:
        self._require_editor(actor, "add_timeslot")
        with self._attempt("add_timeslot", actor.id, start=payload.start_time):
            with self.store.exclusive(db):
                timeslot = Timeslot(
                    start_time=payload.start_time,
                    end_time=payload.end_time,
                    blocked_reason=payload.blocked.reason if payload.blocked is not None else None,
                )
                db.add(timeslot)
                db.flush()
                self._record(db, actor, "timeslot.create", entity_type="timeslot", entity_id=timeslot.id)
        db.refresh(timeslot)
        return timeslot

    def update_timeslot(
        self, db: Session, actor: User, timeslot_id: int, payload: TimeslotUpdate
    ) -> tuple[Timeslot, MutationOutcome]:
        """Change times or block/unblock. Blocking unschedules whatever sat in that timeslot."""
        self._require_editor(actor, "update_timeslot")
        with self._attempt("update_timeslot", actor.id, timeslot_id=timeslot_id):
            with self.store.exclusive(db):
                timeslot = db.get(Timeslot, timeslot_id)
                if timeslot is None:
                    raise NotFoundError("timeslot", timeslot_id)

                start_time = payload.start_time or timeslot.start_time
                end_time = payload.end_time or timeslot.end_time
                if parse_time_to_minutes(end_time) <= parse_time_to_minutes(start_time):
                    raise CatalogValidationError(
                        "end_time must be after start_time",
                        details={"start_time": start_time, "end_time": end_time},
                    )
                timeslot.start_time = start_time
                timeslot.end_time = end_time

                removed: list[AssignmentEntry] = []
                if payload.blocked is not None:
                    timeslot.blocked_reason = payload.blocked.reason
                    removed = self.store.remove_where(db, timeslot_id=timeslot_id)
                elif payload.unblock:
                    timeslot.blocked_reason = None
                db.flush()
                version = self._record(
                    db,
                    actor,
                    "timeslot.update",
                    entity_type="timeslot",
                    entity_id=timeslot_id,
                    details={
                        "blocked": timeslot.blocked_reason is not None,
                        "unscheduled": [entry.session_id for entry in removed],
                    },
                )
        db.refresh(timeslot)
        return timeslot, self._cascade_outcome("update_timeslot", version, removed)

    def remove_timeslot(self, db: Session, actor: User, timeslot_id: int) -> MutationOutcome:
        self._require_editor(actor, "remove_timeslot")
        with self._attempt("remove_timeslot", actor.id, timeslot_id=timeslot_id):
            with self.store.exclusive(db):
                timeslot = db.get(Timeslot, timeslot_id)
                if timeslot is None:
                    raise NotFoundError("timeslot", timeslot_id)
                removed = self.store.remove_where(db, timeslot_id=timeslot_id)
                db.delete(timeslot)
                db.flush()
                version = self._record(
                    db,
                    actor,
                    "timeslot.delete",
                    entity_type="timeslot",
                    entity_id=timeslot_id,
                    details={"unscheduled": [entry.session_id for entry in removed]},
                )
        return self._cascade_outcome("remove_timeslot", version, removed)

    # Sessions

    def add_session(self, db: Session, actor: User, payload: TalkSessionCreate) -> TalkSession:
        """Any active user may propose a session; it starts with no votes."""
        if not actor.is_active:
            raise PermissionDeniedError("Inactive users cannot propose sessions")
        with self._attempt("add_session", actor.id, title=payload.title):
            with self.store.exclusive(db):
                talk = TalkSession(title=payload.title, body=payload.body, tag=payload.tag, votes=0, owner_id=actor.id)
                db.add(talk)
                db.flush()
                self._record(db, actor, "session.create", entity_type="session", entity_id=talk.id)
        db.refresh(talk)
        return talk

    def remove_session(self, db: Session, actor: User, session_id: int) -> MutationOutcome:
        with self._attempt("remove_session", actor.id, session_id=session_id):
            with self.store.exclusive(db):
                talk = db.get(TalkSession, session_id)
                # Non-editors only learn about sessions they own.
                if not actor.can_edit_schedule and not (
                    actor.is_active and talk is not None and talk.owner_id == actor.id
                ):
                    raise PermissionDeniedError(
                        "Only schedule editors or the proposer may withdraw a session",
                        details={"action": "remove_session"},
                    )
                if talk is None:
                    raise NotFoundError("session", session_id)
                removed = self.store.remove_where(db, session_id=session_id)
                db.delete(talk)
                db.flush()
                version = self._record(db, actor, "session.delete", entity_type="session", entity_id=session_id)
        return self._cascade_outcome("remove_session", version, removed)

    # Helpers

    def _require_editor(self, actor: User, action: str) -> None:
        if not actor.can_edit_schedule:
            logger.info("Rejected %s by user %s with role %s", action, actor.id, actor.role)
            raise PermissionDeniedError(
                "Only facilitators and admins can change the schedule",
                details={"action": action, "role": actor.role.value if actor.role else None},
            )

    @contextmanager
    def _attempt(self, action: str, actor_id: str, **context) -> Iterator[None]:
        logger.debug("%s requested by %s %s", action, actor_id, context)
        try:
            yield
        except ScheduleError as exc:
            logger.info("%s rejected (%s): %s", action, exc.kind.value, exc.message)
            raise
        except CatalogValidationError as exc:
            logger.info("%s rejected: %s", action, exc.message)
            raise
        logger.debug("%s committed", action)

    @staticmethod
    def _check_version(db: Session, expected_version: int | None) -> None:
        if expected_version is None:
            return
        current = load_version(db)
        if current != expected_version:
            raise ConflictError(
                "The schedule changed since it was last read",
                reason="stale",
                details={"expected_version": expected_version, "current_version": current},
            )

    @staticmethod
    def _check_target(catalog: CatalogSnapshot, slot: Slot) -> None:
        if slot.room_id not in catalog.room_by_id:
            raise NotFoundError("room", slot.room_id)
        timeslot = catalog.timeslot_by_id.get(slot.timeslot_id)
        if timeslot is None:
            raise NotFoundError("timeslot", slot.timeslot_id)
        if timeslot.is_blocked:
            raise SlotBlockedError(timeslot.id, timeslot.blocked_reason)

    @staticmethod
    def _expect_entry(current: Assignment, slot: Slot, expected_session_id: int | None) -> AssignmentEntry:
        entry = current.by_slot.get(slot)
        if expected_session_id is not None and (entry is None or entry.session_id != expected_session_id):
            raise ConflictError(
                f"Session {expected_session_id} is no longer at the requested slot",
                reason="session_moved",
                details={
                    "slot": slot.as_dict(),
                    "expected_session_id": expected_session_id,
                    "current_session_id": entry.session_id if entry is not None else None,
                },
            )
        if entry is None:
            raise NotFoundError(
                "slot",
                f"{slot.room_id}/{slot.timeslot_id}",
                message=f"No session at room {slot.room_id}, timeslot {slot.timeslot_id}",
            )
        return entry

    def _commit_transition(
        self,
        db: Session,
        actor: User,
        action: str,
        current: Assignment,
        catalog: CatalogSnapshot,
        *,
        removals: list[Slot],
        additions: list[AssignmentEntry],
        details: dict,
    ) -> int:
        ensure_valid(_apply_changes(current.entries, removals, additions), catalog)
        self.store.apply(db, removals=removals, additions=additions)
        return self._record(db, actor, action, details=details)

    def _record(
        self,
        db: Session,
        actor: User,
        action: str,
        *,
        entity_type: str = "schedule",
        entity_id: int | None = None,
        details: dict | None = None,
    ) -> int:
        version = self.store.bump_version(db, actor.id)
        log_activity(
            db,
            user=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            schedule_version=version,
            details=details,
        )
        return version

    @staticmethod
    def _ensure_unique_room_name(db: Session, name: str) -> None:
        clash = db.execute(select(Room.id).where(Room.name == name)).scalar_one_or_none()
        if clash is not None:
            raise ConflictError(f"A room named '{name}' already exists", reason="duplicate_name")

    @staticmethod
    def _cascade_outcome(action: str, version: int, removed: list[AssignmentEntry]) -> MutationOutcome:
        return MutationOutcome(
            action=action,
            version=version,
            touched=tuple(TouchedSlot(entry.slot, None) for entry in removed),
            details={"unscheduled": [entry.session_id for entry in removed]},
        )


@lru_cache
def get_schedule_engine() -> ScheduleEngine:
    settings = get_settings()
    return ScheduleEngine(
        settings=OptimizerSettings(
            max_passes=settings.optimizer_max_passes,
            time_budget_seconds=settings.optimizer_time_budget_seconds,
            spread_popular_sessions=settings.optimizer_spread_popular_sessions,
        )
    )

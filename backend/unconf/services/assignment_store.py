"""Persistent, versioned slot -> session mapping.

Writers serialize on a per-process lock held only for validate+commit; the
``(timeslot_id, room_id)`` and ``session_id`` unique constraints back it up at
the database level. Readers never take the lock and only ever see committed
rows, so a swap (delete both rows, insert both rows, one transaction) is
never observed half-applied.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from unconf.core.exceptions import ConflictError
from unconf.models.assignment import ScheduleAssignment, ScheduleState
from unconf.models.room import Room
from unconf.models.session import TalkSession
from unconf.models.timeslot import Timeslot
from unconf.schemas.timeslot import parse_time_to_minutes
from unconf.services.assignment_model import (
    Assignment,
    AssignmentEntry,
    CatalogSnapshot,
    RoomInfo,
    SessionInfo,
    Slot,
    TimeslotInfo,
)

logger = logging.getLogger(__name__)

SNAPSHOT_ATTEMPTS = 5


def load_catalog(db: Session) -> CatalogSnapshot:
    rooms = tuple(
        RoomInfo(id=row.id, name=row.name, location=row.location, available_spots=row.available_spots)
        for row in db.execute(select(Room.id, Room.name, Room.location, Room.available_spots).order_by(Room.id))
    )
    timeslots = tuple(
        TimeslotInfo(
            id=row.id,
            start_minutes=parse_time_to_minutes(row.start_time),
            end_minutes=parse_time_to_minutes(row.end_time),
            blocked_reason=row.blocked_reason,
        )
        for row in db.execute(
            select(Timeslot.id, Timeslot.start_time, Timeslot.end_time, Timeslot.blocked_reason).order_by(Timeslot.id)
        )
    )
    sessions = tuple(
        SessionInfo(id=row.id, title=row.title, votes=row.votes, tag=row.tag)
        for row in db.execute(
            select(TalkSession.id, TalkSession.title, TalkSession.votes, TalkSession.tag).order_by(TalkSession.id)
        )
    )
    return CatalogSnapshot(rooms=rooms, timeslots=timeslots, sessions=sessions)


def load_version(db: Session) -> int:
    version = db.execute(select(ScheduleState.version).where(ScheduleState.id == 1)).scalar_one_or_none()
    return version or 0


def _load_entries(db: Session) -> list[AssignmentEntry]:
    rows = db.execute(
        select(
            ScheduleAssignment.room_id,
            ScheduleAssignment.timeslot_id,
            ScheduleAssignment.session_id,
            ScheduleAssignment.pinned,
        ).order_by(ScheduleAssignment.id)
    )
    entries = [
        AssignmentEntry(
            slot=Slot(room_id=row.room_id, timeslot_id=row.timeslot_id),
            session_id=row.session_id,
            pinned=row.pinned,
        )
        for row in rows
    ]
    return entries


def load_assignment(db: Session) -> Assignment:
    """Rows plus version. Only consistent under the writer lock; readers use load_snapshot."""
    entries = _load_entries(db)
    return Assignment(entries, version=load_version(db))


def load_snapshot(db: Session) -> tuple[CatalogSnapshot, Assignment]:
    """Catalog and assignment as of a single committed version.

    Every committed mutation bumps the version in the same transaction, so an
    unchanged version on both sides of the reads means no commit landed in
    between. Otherwise read again.
    """
    for attempt in range(1, SNAPSHOT_ATTEMPTS + 1):
        before = load_version(db)
        catalog = load_catalog(db)
        entries = _load_entries(db)
        after = load_version(db)
        if before == after:
            return catalog, Assignment(entries, version=after)
        logger.debug("Schedule moved from version %d to %d during read %d; retrying", before, after, attempt)
    raise ConflictError(
        "The schedule kept changing while it was being read",
        reason="busy",
        details={"attempts": SNAPSHOT_ATTEMPTS},
    )


class AssignmentStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()

    @contextmanager
    def exclusive(self, db: Session) -> Iterator[None]:
        """Hold the writer lock for one mutation; commit on success, roll back otherwise."""
        with self._lock:
            # Anything cached from before the lock may be stale.
            db.expire_all()
            try:
                yield
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                logger.warning("Commit hit a uniqueness constraint: %s", exc.orig)
                raise ConflictError(
                    "The schedule changed while this edit was being applied",
                    reason="constraint",
                ) from exc
            except Exception:
                db.rollback()
                raise

    def apply(
        self,
        db: Session,
        *,
        removals: Iterable[Slot] = (),
        additions: Iterable[AssignmentEntry] = (),
    ) -> None:
        """Delete then insert rows as one step of the current transaction."""
        for slot in removals:
            db.execute(
                delete(ScheduleAssignment).where(
                    ScheduleAssignment.room_id == slot.room_id,
                    ScheduleAssignment.timeslot_id == slot.timeslot_id,
                )
            )
        rows = [
            {
                "room_id": entry.slot.room_id,
                "timeslot_id": entry.slot.timeslot_id,
                "session_id": entry.session_id,
                "pinned": entry.pinned,
            }
            for entry in additions
        ]
        if rows:
            db.execute(insert(ScheduleAssignment), rows)
        db.flush()

    def replace_all(self, db: Session, entries: Iterable[AssignmentEntry]) -> int:
        removed = db.execute(delete(ScheduleAssignment)).rowcount or 0
        self.apply(db, additions=entries)
        return removed

    def remove_where(
        self,
        db: Session,
        *,
        room_id: int | None = None,
        timeslot_id: int | None = None,
        session_id: int | None = None,
    ) -> list[AssignmentEntry]:
        """Cascade helper: drop every row referencing the given catalog entity."""
        conditions = []
        if room_id is not None:
            conditions.append(ScheduleAssignment.room_id == room_id)
        if timeslot_id is not None:
            conditions.append(ScheduleAssignment.timeslot_id == timeslot_id)
        if session_id is not None:
            conditions.append(ScheduleAssignment.session_id == session_id)
        if not conditions:
            raise ValueError("remove_where needs at least one filter")

        doomed = [
            AssignmentEntry(
                slot=Slot(room_id=row.room_id, timeslot_id=row.timeslot_id),
                session_id=row.session_id,
                pinned=row.pinned,
            )
            for row in db.execute(
                select(
                    ScheduleAssignment.room_id,
                    ScheduleAssignment.timeslot_id,
                    ScheduleAssignment.session_id,
                    ScheduleAssignment.pinned,
                ).where(*conditions)
            )
        ]
        if doomed:
            db.execute(delete(ScheduleAssignment).where(*conditions))
            db.flush()
        return doomed

    def set_pinned(self, db: Session, slot: Slot, pinned: bool) -> None:
        db.execute(
            update(ScheduleAssignment)
            .where(
                ScheduleAssignment.room_id == slot.room_id,
                ScheduleAssignment.timeslot_id == slot.timeslot_id,
            )
            .values(pinned=pinned)
        )
        db.flush()

    def bump_version(self, db: Session, actor_id: str | None) -> int:
        state = db.get(ScheduleState, 1)
        if state is None:
            state = ScheduleState(id=1, version=0)
            db.add(state)
        state.version += 1
        state.updated_by_id = actor_id
        db.flush()
        return state.version

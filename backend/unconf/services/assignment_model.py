"""Value types shared by the optimizer, the invariant validator and the store.

Everything here is immutable and free of database access so that scheduling
logic can be exercised directly in tests.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from functools import cached_property


@dataclass(frozen=True, order=True)
class Slot:
    room_id: int
    timeslot_id: int

    def as_dict(self) -> dict:
        return {"roomId": self.room_id, "timeslotId": self.timeslot_id}


@dataclass(frozen=True)
class SessionInfo:
    id: int
    title: str
    votes: int
    tag: str | None = None


@dataclass(frozen=True)
class RoomInfo:
    id: int
    name: str
    location: str = ""
    available_spots: int = 0


@dataclass(frozen=True)
class TimeslotInfo:
    id: int
    start_minutes: int
    end_minutes: int
    blocked_reason: str | None = None

    @property
    def is_blocked(self) -> bool:
        return self.blocked_reason is not None

    @property
    def duration_minutes(self) -> int:
        return self.end_minutes - self.start_minutes


@dataclass(frozen=True)
class AssignmentEntry:
    slot: Slot
    session_id: int
    pinned: bool = False


@dataclass(frozen=True)
class CatalogSnapshot:
    rooms: tuple[RoomInfo, ...] = ()
    timeslots: tuple[TimeslotInfo, ...] = ()
    sessions: tuple[SessionInfo, ...] = ()

    @cached_property
    def room_by_id(self) -> dict[int, RoomInfo]:
        return {room.id: room for room in self.rooms}

    @cached_property
    def timeslot_by_id(self) -> dict[int, TimeslotInfo]:
        return {timeslot.id: timeslot for timeslot in self.timeslots}

    @cached_property
    def session_by_id(self) -> dict[int, SessionInfo]:
        return {session.id: session for session in self.sessions}

    def slot_sort_key(self, slot: Slot) -> tuple[int, int, int]:
        timeslot = self.timeslot_by_id.get(slot.timeslot_id)
        start = timeslot.start_minutes if timeslot is not None else 24 * 60
        return (start, slot.timeslot_id, slot.room_id)

    @cached_property
    def ordered_timeslots(self) -> tuple[TimeslotInfo, ...]:
        return tuple(sorted(self.timeslots, key=lambda item: (item.start_minutes, item.id)))

    @cached_property
    def eligible_slots(self) -> tuple[Slot, ...]:
        """Every (room, non-blocked timeslot) pair in canonical order."""
        room_ids = sorted(room.id for room in self.rooms)
        return tuple(
            Slot(room_id=room_id, timeslot_id=timeslot.id)
            for timeslot in self.ordered_timeslots
            if not timeslot.is_blocked
            for room_id in room_ids
        )

    def is_eligible(self, slot: Slot) -> bool:
        timeslot = self.timeslot_by_id.get(slot.timeslot_id)
        return timeslot is not None and not timeslot.is_blocked and slot.room_id in self.room_by_id

    def fingerprint(self) -> tuple:
        """Identity of the catalog as far as slot eligibility and ordering are concerned.

        Vote counts, titles and room capacity are deliberately left out: a
        computed assignment stays valid when only those change.
        """
        return (
            tuple(sorted(self.room_by_id)),
            tuple(sorted((item.id, item.start_minutes, item.is_blocked) for item in self.timeslots)),
            tuple(sorted(self.session_by_id)),
        )


class Assignment:
    """Read-only set of placements plus the store version it was read at."""

    def __init__(self, entries: Iterable[AssignmentEntry] = (), version: int = 0) -> None:
        self._entries: tuple[AssignmentEntry, ...] = tuple(entries)
        self.version = version

    @cached_property
    def by_slot(self) -> dict[Slot, AssignmentEntry]:
        return {entry.slot: entry for entry in self._entries}

    @cached_property
    def by_session(self) -> dict[int, AssignmentEntry]:
        return {entry.session_id: entry for entry in self._entries}

    @property
    def entries(self) -> tuple[AssignmentEntry, ...]:
        return self._entries

    def __iter__(self) -> Iterator[AssignmentEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Assignment):
            return NotImplemented
        return set(self._entries) == set(other._entries)

    def __repr__(self) -> str:
        return f"Assignment(version={self.version}, entries={len(self._entries)})"

    def session_at(self, slot: Slot) -> int | None:
        entry = self.by_slot.get(slot)
        return entry.session_id if entry is not None else None

    def slot_of(self, session_id: int) -> Slot | None:
        entry = self.by_session.get(session_id)
        return entry.slot if entry is not None else None

    def pinned_entries(self) -> tuple[AssignmentEntry, ...]:
        return tuple(entry for entry in self._entries if entry.pinned)

    def total_votes(self, catalog: CatalogSnapshot) -> int:
        return sum(
            catalog.session_by_id[entry.session_id].votes
            for entry in self._entries
            if entry.session_id in catalog.session_by_id
        )

    def ordered(self, catalog: CatalogSnapshot) -> list[AssignmentEntry]:
        return sorted(self._entries, key=lambda entry: catalog.slot_sort_key(entry.slot))

    def unassigned_sessions(self, catalog: CatalogSnapshot) -> list[SessionInfo]:
        placed = self.by_session
        return sorted(
            (session for session in catalog.sessions if session.id not in placed),
            key=lambda session: (-session.votes, session.id),
        )


@dataclass
class ScheduleView:
    """Everything a caller needs to render the board."""

    catalog: CatalogSnapshot
    assignment: Assignment

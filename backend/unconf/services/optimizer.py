"""Vote-weighted session placement.

Two phases: a greedy construction that hands out slots in canonical order to
sessions ranked by votes, followed by a first-improvement local search over
single moves and pairwise swaps. The result is a local optimum for that
neighbourhood, not a global one; an exact assignment-problem solver would be
needed for the latter.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from time import perf_counter
from typing import Literal

from unconf.services.assignment_model import (
    Assignment,
    AssignmentEntry,
    CatalogSnapshot,
    Slot,
)

logger = logging.getLogger(__name__)

# Row weight for the popularity-clash penalty: CLASH_WEIGHT + LATE_CLASH_WEIGHT * row index.
CLASH_WEIGHT = 3
LATE_CLASH_WEIGHT = 2

StopReason = Literal["local_optimum", "pass_budget", "time_budget"]


class OptimizationCancelled(Exception):
    """The computation was superseded before it finished."""


class _TimeBudgetExhausted(Exception):
    pass


@dataclass(frozen=True)
class OptimizerSettings:
    max_passes: int = 200
    time_budget_seconds: float = 5.0
    spread_popular_sessions: bool = False


@dataclass(frozen=True)
class OptimizationReport:
    passes: int
    improvements: int
    total_votes: int
    clash_penalty: int
    stopped_by: StopReason
    elapsed_ms: float


def row_clash(votes: Iterable[int]) -> int:
    """Sum of adjacent products of a timeslot's vote counts, sorted descending.

    Large when several popular sessions compete for the same audience.
    """
    ranked = sorted((value for value in votes if value > 0), reverse=True)
    return sum(left * right for left, right in zip(ranked, ranked[1:]))


class ScheduleOptimizer:
    def __init__(
        self,
        catalog: CatalogSnapshot,
        *,
        pinned: Iterable[AssignmentEntry] = (),
        settings: OptimizerSettings | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> None:
        self.catalog = catalog
        self.settings = settings or OptimizerSettings()
        self._should_cancel = should_cancel or (lambda: False)

        self.slots = catalog.eligible_slots
        self.votes = {session.id: session.votes for session in catalog.sessions}
        self.row_index = {
            timeslot.id: index
            for index, timeslot in enumerate(item for item in catalog.ordered_timeslots if not item.is_blocked)
        }
        self.room_ids = sorted(catalog.room_by_id)

        self.pinned: dict[Slot, int] = {}
        for entry in pinned:
            if not catalog.is_eligible(entry.slot) or entry.session_id not in self.votes:
                logger.warning("Ignoring pinned entry outside the current catalog: %s", entry)
                continue
            self.pinned[entry.slot] = entry.session_id

        self.placements: dict[Slot, int] = {}
        self.unassigned: list[int] = []
        self._applied = 0

    # Phase 1

    def construct(self) -> None:
        self._check_cancelled()
        self.placements = dict(self.pinned)
        pinned_sessions = set(self.pinned.values())
        ranked = sorted(
            (session for session in self.catalog.sessions if session.id not in pinned_sessions),
            key=lambda session: (-session.votes, session.id),
        )
        free_slots = iter(slot for slot in self.slots if slot not in self.pinned)
        self.unassigned = []
        for session in ranked:
            slot = next(free_slots, None)
            if slot is None:
                self.unassigned.append(session.id)
                continue
            self.placements[slot] = session.id

    # Phase 2

    def improve(self, started: float | None = None) -> tuple[int, int, StopReason]:
        started = perf_counter() if started is None else started
        passes = 0
        self._applied = 0
        while True:
            if passes >= self.settings.max_passes:
                return passes, self._applied, "pass_budget"
            if self._out_of_time(started):
                return passes, self._applied, "time_budget"
            passes += 1
            try:
                applied = self._run_pass(started)
            except _TimeBudgetExhausted:
                return passes, self._applied, "time_budget"
            if applied == 0:
                return passes, self._applied, "local_optimum"

    def _run_pass(self, started: float) -> int:
        before = self._applied
        self._replace_with_unassigned(started)
        self._fill_empty_slots(started)
        if self.settings.spread_popular_sessions:
            # Swaps and relocations never change the vote total, so they can
            # only improve the secondary objective.
            self._swap_assigned(started)
            self._relocate_to_empty(started)
        return self._applied - before

    def _replace_with_unassigned(self, started: float) -> None:
        for slot in self.slots:
            self._check_budget(started)
            current = self.placements.get(slot)
            if current is None or slot in self.pinned:
                continue
            for candidate in self.unassigned:
                if self._improves(self._delta_replace(slot, current, candidate)):
                    self.placements[slot] = candidate
                    self.unassigned.remove(candidate)
                    self._return_to_pool(current)
                    self._applied += 1
                    break

    def _fill_empty_slots(self, started: float) -> None:
        for slot in self.slots:
            self._check_budget(started)
            if slot in self.placements or not self.unassigned:
                continue
            for candidate in self.unassigned:
                if self._improves(self._delta_fill(slot, candidate)):
                    self.placements[slot] = candidate
                    self.unassigned.remove(candidate)
                    self._applied += 1
                    break

    def _swap_assigned(self, started: float) -> None:
        movable = [slot for slot in self.slots if slot in self.placements and slot not in self.pinned]
        for index, first in enumerate(movable):
            self._check_budget(started)
            for second in movable[index + 1:]:
                if first.timeslot_id == second.timeslot_id:
                    continue
                if self._improves(self._delta_swap(first, second)):
                    self.placements[first], self.placements[second] = self.placements[second], self.placements[first]
                    self._applied += 1

    def _relocate_to_empty(self, started: float) -> None:
        for source in self.slots:
            self._check_budget(started)
            if source not in self.placements or source in self.pinned:
                continue
            for target in self.slots:
                if target in self.placements or target.timeslot_id == source.timeslot_id:
                    continue
                if self._improves(self._delta_relocate(source, target)):
                    self.placements[target] = self.placements.pop(source)
                    self._applied += 1
                    break

    # Objective

    def total_votes(self) -> int:
        return sum(self.votes[session_id] for session_id in self.placements.values())

    def clash_penalty(self) -> int:
        return sum(self._row_penalty(timeslot_id, self.placements) for timeslot_id in self.row_index)

    def _row_penalty(self, timeslot_id: int, placements: dict[Slot, int]) -> int:
        row_votes = [
            self.votes[placements[slot]]
            for slot in (Slot(room_id, timeslot_id) for room_id in self.room_ids)
            if slot in placements
        ]
        return row_clash(row_votes) * (CLASH_WEIGHT + LATE_CLASH_WEIGHT * self.row_index[timeslot_id])

    def _penalty_delta(self, changes: dict[Slot, int | None]) -> int:
        if not self.settings.spread_popular_sessions:
            return 0
        touched_rows = {slot.timeslot_id for slot in changes}
        before = sum(self._row_penalty(timeslot_id, self.placements) for timeslot_id in touched_rows)
        trial = dict(self.placements)
        for slot, session_id in changes.items():
            if session_id is None:
                trial.pop(slot, None)
            else:
                trial[slot] = session_id
        after = sum(self._row_penalty(timeslot_id, trial) for timeslot_id in touched_rows)
        return after - before

    def _delta_replace(self, slot: Slot, current: int, candidate: int) -> tuple[int, int]:
        gain = self.votes[candidate] - self.votes[current]
        if gain != 0:
            return gain, 0
        return 0, self._penalty_delta({slot: candidate})

    def _delta_fill(self, slot: Slot, candidate: int) -> tuple[int, int]:
        gain = self.votes[candidate]
        if gain != 0:
            return gain, 0
        return 0, self._penalty_delta({slot: candidate})

    def _delta_swap(self, first: Slot, second: Slot) -> tuple[int, int]:
        return 0, self._penalty_delta({first: self.placements[second], second: self.placements[first]})

    def _delta_relocate(self, source: Slot, target: Slot) -> tuple[int, int]:
        return 0, self._penalty_delta({source: None, target: self.placements[source]})

    @staticmethod
    def _improves(delta: tuple[int, int]) -> bool:
        vote_gain, penalty_change = delta
        return vote_gain > 0 or (vote_gain == 0 and penalty_change < 0)

    # Bookkeeping

    def _return_to_pool(self, session_id: int) -> None:
        self.unassigned.append(session_id)
        self.unassigned.sort(key=lambda item: (-self.votes[item], item))

    def _check_cancelled(self) -> None:
        if self._should_cancel():
            raise OptimizationCancelled()

    def _check_budget(self, started: float) -> None:
        self._check_cancelled()
        if self._out_of_time(started):
            raise _TimeBudgetExhausted()

    def _out_of_time(self, started: float) -> bool:
        return perf_counter() - started >= self.settings.time_budget_seconds

    def assignment(self) -> Assignment:
        entries = [
            AssignmentEntry(slot=slot, session_id=session_id, pinned=slot in self.pinned)
            for slot, session_id in self.placements.items()
        ]
        entries.sort(key=lambda entry: self.catalog.slot_sort_key(entry.slot))
        return Assignment(entries)

    def run(self) -> tuple[Assignment, OptimizationReport]:
        started = perf_counter()
        if not self.slots:
            logger.info("No eligible slots; producing an empty assignment")
            return Assignment(), OptimizationReport(
                passes=0, improvements=0, total_votes=0, clash_penalty=0, stopped_by="local_optimum", elapsed_ms=0.0
            )

        self.construct()
        passes, improvements, stopped_by = self.improve(started)
        elapsed_ms = (perf_counter() - started) * 1000
        report = OptimizationReport(
            passes=passes,
            improvements=improvements,
            total_votes=self.total_votes(),
            clash_penalty=self.clash_penalty(),
            stopped_by=stopped_by,
            elapsed_ms=elapsed_ms,
        )
        logger.info(
            "Optimized %d sessions into %d slots: %d placed, votes=%d, passes=%d, improvements=%d, stop=%s, %.1fms",
            len(self.catalog.sessions),
            len(self.slots),
            len(self.placements),
            report.total_votes,
            passes,
            improvements,
            stopped_by,
            elapsed_ms,
        )
        return self.assignment(), report


def optimize(
    catalog: CatalogSnapshot,
    *,
    pinned: Iterable[AssignmentEntry] = (),
    settings: OptimizerSettings | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> Assignment:
    assignment, _ = ScheduleOptimizer(
        catalog, pinned=pinned, settings=settings, should_cancel=should_cancel
    ).run()
    return assignment

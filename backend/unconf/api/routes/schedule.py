from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from unconf.api.deps import get_current_user, get_db, get_engine
from unconf.models.user import User
from unconf.schemas.room import RoomOut
from unconf.schemas.schedule import (
    AssignmentEntryOut,
    GenerateResponse,
    MoveRequest,
    MutationResponse,
    OptimizationReportOut,
    PinRequest,
    PlaceRequest,
    ScheduleOut,
    SwapRequest,
    UnassignedSessionOut,
    UnplaceRequest,
)
from unconf.schemas.timeslot import TimeslotOut, minutes_to_time
from unconf.services.assignment_model import ScheduleView, Slot
from unconf.services.schedule_engine import MutationOutcome, ScheduleEngine

router = APIRouter()


def render_schedule(view: ScheduleView) -> ScheduleOut:
    catalog = view.catalog
    assignments = []
    for entry in view.assignment.ordered(catalog):
        session = catalog.session_by_id.get(entry.session_id)
        assignments.append(
            AssignmentEntryOut(
                room_id=entry.slot.room_id,
                timeslot_id=entry.slot.timeslot_id,
                session_id=entry.session_id,
                title=session.title if session else None,
                votes=session.votes if session else None,
                pinned=entry.pinned,
            )
        )
    return ScheduleOut(
        version=view.assignment.version,
        rooms=[RoomOut.model_validate(room, from_attributes=True) for room in catalog.rooms],
        timeslots=[
            TimeslotOut(
                id=timeslot.id,
                start_time=minutes_to_time(timeslot.start_minutes),
                end_time=minutes_to_time(timeslot.end_minutes),
                blocked_reason=timeslot.blocked_reason,
            )
            for timeslot in catalog.ordered_timeslots
        ],
        assignments=assignments,
        unassigned=[
            UnassignedSessionOut(id=session.id, title=session.title, votes=session.votes, tag=session.tag)
            for session in view.assignment.unassigned_sessions(catalog)
        ],
        total_votes=view.assignment.total_votes(catalog),
    )


def render_mutation(outcome: MutationOutcome) -> MutationResponse:
    return MutationResponse(
        action=outcome.action,
        version=outcome.version,
        touched=[
            AssignmentEntryOut(
                room_id=item.slot.room_id,
                timeslot_id=item.slot.timeslot_id,
                session_id=item.session_id,
                pinned=item.pinned,
            )
            for item in outcome.touched
        ],
        details=outcome.details,
    )


@router.get("", response_model=ScheduleOut)
def get_schedule(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> ScheduleOut:
    return render_schedule(engine.get_schedule(db))


@router.post("/generate", response_model=GenerateResponse)
def generate_schedule(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> GenerateResponse:
    outcome = engine.generate(db, current_user)
    report = outcome.report
    return GenerateResponse(
        schedule=render_schedule(outcome.view),
        report=OptimizationReportOut(
            passes=report.passes,
            improvements=report.improvements,
            total_votes=report.total_votes,
            clash_penalty=report.clash_penalty,
            stopped_by=report.stopped_by,
            elapsed_ms=round(report.elapsed_ms, 2),
        ),
    )


@router.post("/clear", response_model=MutationResponse)
def clear_schedule(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> MutationResponse:
    return render_mutation(engine.clear(db, current_user))


@router.put("/move", response_model=MutationResponse)
def move_session(
    payload: MoveRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> MutationResponse:
    outcome = engine.move(
        db,
        current_user,
        payload.from_slot.to_slot(),
        Slot(room_id=payload.to_room_id, timeslot_id=payload.to_timeslot_id),
        expected_session_id=payload.session_id,
        expected_version=payload.expected_version,
    )
    return render_mutation(outcome)


@router.put("/swap", response_model=MutationResponse)
def swap_sessions(
    payload: SwapRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> MutationResponse:
    outcome = engine.swap(
        db,
        current_user,
        payload.slot_a.to_slot(),
        payload.slot_b.to_slot(),
        expected_version=payload.expected_version,
    )
    return render_mutation(outcome)


@router.post("/place", response_model=MutationResponse)
def place_session(
    payload: PlaceRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> MutationResponse:
    outcome = engine.place(
        db,
        current_user,
        payload.session_id,
        payload.slot.to_slot() if payload.slot is not None else None,
        expected_version=payload.expected_version,
    )
    return render_mutation(outcome)


@router.post("/unplace", response_model=MutationResponse)
def unplace_session(
    payload: UnplaceRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> MutationResponse:
    outcome = engine.unplace(
        db,
        current_user,
        payload.slot.to_slot(),
        expected_session_id=payload.session_id,
        expected_version=payload.expected_version,
    )
    return render_mutation(outcome)


@router.put("/pin", response_model=MutationResponse)
def pin_session(
    payload: PinRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> MutationResponse:
    return render_mutation(engine.set_pinned(db, current_user, payload.slot.to_slot(), payload.pinned))

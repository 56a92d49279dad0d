from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from unconf.api.deps import get_current_user, get_db, get_engine
from unconf.api.routes.schedule import render_mutation
from unconf.models.timeslot import Timeslot
from unconf.models.user import User
from unconf.schemas.schedule import MutationResponse
from unconf.schemas.timeslot import TimeslotCreate, TimeslotOut, TimeslotUpdate
from unconf.services.schedule_engine import ScheduleEngine

router = APIRouter()


@router.get("/", response_model=list[TimeslotOut])
def list_timeslots(
    current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> list[TimeslotOut]:
    return list(db.execute(select(Timeslot).order_by(Timeslot.start_time, Timeslot.id)).scalars())


@router.post("/", response_model=TimeslotOut, status_code=status.HTTP_201_CREATED)
def create_timeslot(
    payload: TimeslotCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> TimeslotOut:
    return engine.add_timeslot(db, current_user, payload)


@router.put("/{timeslot_id}", response_model=TimeslotOut)
def update_timeslot(
    timeslot_id: int,
    payload: TimeslotUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> TimeslotOut:
    timeslot, _ = engine.update_timeslot(db, current_user, timeslot_id, payload)
    return timeslot


@router.delete("/{timeslot_id}", response_model=MutationResponse)
def delete_timeslot(
    timeslot_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> MutationResponse:
    return render_mutation(engine.remove_timeslot(db, current_user, timeslot_id))

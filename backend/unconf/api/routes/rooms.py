from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from unconf.api.deps import get_current_user, get_db, get_engine
from unconf.api.routes.schedule import render_mutation
from unconf.models.room import Room
from unconf.models.user import User
from unconf.schemas.room import RoomCreate, RoomOut, RoomUpdate
from unconf.schemas.schedule import MutationResponse
from unconf.services.schedule_engine import ScheduleEngine

router = APIRouter()


@router.get("/", response_model=list[RoomOut])
def list_rooms(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> list[RoomOut]:
    return list(db.execute(select(Room).order_by(Room.id)).scalars())


@router.post("/", response_model=RoomOut, status_code=status.HTTP_201_CREATED)
def create_room(
    payload: RoomCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> RoomOut:
    return engine.add_room(db, current_user, payload)


@router.put("/{room_id}", response_model=RoomOut)
def update_room(
    room_id: int,
    payload: RoomUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> RoomOut:
    return engine.update_room(db, current_user, room_id, payload)


@router.delete("/{room_id}", response_model=MutationResponse)
def delete_room(
    room_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> MutationResponse:
    return render_mutation(engine.remove_room(db, current_user, room_id))

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from unconf.api.deps import get_current_user, get_db, get_engine
from unconf.api.routes.schedule import render_mutation
from unconf.models.session import TalkSession
from unconf.models.user import User
from unconf.schemas.schedule import MutationResponse
from unconf.schemas.session import TalkSessionCreate, TalkSessionOut
from unconf.services.schedule_engine import ScheduleEngine

router = APIRouter()


@router.get("/", response_model=list[TalkSessionOut])
def list_sessions(
    current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> list[TalkSessionOut]:
    return list(db.execute(select(TalkSession).order_by(TalkSession.votes.desc(), TalkSession.id)).scalars())


@router.post("/", response_model=TalkSessionOut, status_code=status.HTTP_201_CREATED)
def propose_session(
    payload: TalkSessionCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> TalkSessionOut:
    return engine.add_session(db, current_user, payload)


@router.delete("/{session_id}", response_model=MutationResponse)
def withdraw_session(
    session_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: ScheduleEngine = Depends(get_engine),
) -> MutationResponse:
    return render_mutation(engine.remove_session(db, current_user, session_id))

from __future__ import annotations

import logging

from sqlalchemy import inspect, insert, select
from sqlalchemy.engine import Engine

import unconf.models  # noqa: F401
from unconf.db.base import Base
from unconf.models.assignment import ScheduleState

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "users": {"id", "email", "role", "is_active"},
    "rooms": {"id", "name", "location", "available_spots"},
    "timeslots": {"id", "start_time", "end_time", "blocked_reason"},
    "sessions": {"id", "title", "votes", "tag", "owner_id"},
    "timeslot_assignments": {"id", "timeslot_id", "room_id", "session_id", "pinned"},
    "schedule_state": {"id", "version"},
}


def _ensure_schedule_state_row(bind: Engine) -> None:
    with bind.begin() as connection:
        existing = connection.execute(select(ScheduleState.id).where(ScheduleState.id == 1)).first()
        if existing is None:
            connection.execute(insert(ScheduleState).values(id=1, version=0))
            logger.info("Initialized empty schedule state")


def missing_schema_items(bind: Engine) -> tuple[list[str], dict[str, list[str]]]:
    with bind.connect() as connection:
        inspector = inspect(connection)
        table_names = set(inspector.get_table_names())
        missing_tables = sorted(name for name in REQUIRED_COLUMNS if name not in table_names)
        missing_columns: dict[str, list[str]] = {}
        for table_name, required in REQUIRED_COLUMNS.items():
            if table_name not in table_names:
                continue
            existing = {item["name"] for item in inspector.get_columns(table_name)}
            missing = sorted(required - existing)
            if missing:
                missing_columns[table_name] = missing
    return missing_tables, missing_columns


def ensure_runtime_schema(bind: Engine | None = None) -> None:
    if bind is None:
        from unconf.db.session import engine as bind
    try:
        Base.metadata.create_all(bind=bind)
        _ensure_schedule_state_row(bind)
        missing_tables, missing_columns = missing_schema_items(bind)
        if missing_tables or missing_columns:
            raise RuntimeError(
                f"Schema is outdated (tables: {missing_tables}, columns: {missing_columns}); "
                "run `alembic upgrade head`"
            )
    except Exception as exc:  # pragma: no cover - runtime environment dependent
        logger.exception("Runtime schema bootstrap failed")
        raise RuntimeError("Runtime schema bootstrap failed") from exc

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from unconf.api.routes import health, rooms, schedule, sessions, timeslots
from unconf.core.config import get_settings
from unconf.core.exceptions import AppError, ScheduleError
from unconf.core.middleware import RequestSizeLimitMiddleware, RequestTimingMiddleware
from unconf.db.bootstrap import ensure_runtime_schema

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_runtime_schema()
    logger.info("%s ready", settings.project_name)
    yield


async def app_error_handler(request: Request, exc: AppError):
    kind = exc.kind.value if isinstance(exc, ScheduleError) else "error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"kind": kind, "message": exc.message, "details": exc.details},
    )


app = FastAPI(title=settings.project_name, lifespan=lifespan)
app.add_exception_handler(AppError, app_error_handler)

app.add_middleware(RequestSizeLimitMiddleware, max_bytes=settings.max_request_size_bytes)
app.add_middleware(RequestTimingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix=settings.api_prefix, tags=["health"])
app.include_router(schedule.router, prefix=f"{settings.api_prefix}/schedule", tags=["schedule"])
app.include_router(rooms.router, prefix=f"{settings.api_prefix}/rooms", tags=["rooms"])
app.include_router(timeslots.router, prefix=f"{settings.api_prefix}/timeslots", tags=["timeslots"])
app.include_router(sessions.router, prefix=f"{settings.api_prefix}/sessions", tags=["sessions"])

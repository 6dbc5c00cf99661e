"""FastAPI application for the counter queue system.

The app exposes the queue operations used by reception terminals,
attendant counters and public displays: issuing tickets, calling the next
ticket, manual calls, status changes, the daily reset and a Server-Sent
Events stream per unit.  Configuration comes from environment variables
(see :mod:`config`).  Redis is optional; when configured it carries events
between workers to every SSE stream and caches the display board.

Access control is handled by the gateway in front of this service.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import text

import cache
import config
from database import init_db, make_engine
from errors import QueueError
from models import TicketStatus
from schemas import (
    CallNextRequest,
    IssueTicketRequest,
    ManualCallRequest,
    OrganUpsert,
    RepeatCallRequest,
    ResetRequest,
    SettingsUpdate,
    TransitionRequest,
)
from services import QueueService

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Counter Queue",
    description="Ticket issuing and calling for service counters",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_service: Optional[QueueService] = None


def get_service() -> QueueService:
    if _service is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return _service


@app.on_event("startup")
def on_startup() -> None:
    """Initialise the database and the queue service."""
    global _service
    logger.info("Starting Counter Queue application...")
    logger.info(f"Database: {'PostgreSQL' if config.is_postgres(config.DATABASE_URL) else 'SQLite'}")
    logger.info(f"Redis: {'configured' if config.REDIS_URL else 'not configured'}")

    engine = make_engine()
    init_db(engine)
    _service = QueueService(engine)
    logger.info("Counter Queue started successfully")


@app.on_event("shutdown")
def on_shutdown() -> None:
    global _service
    if _service is not None:
        _service.close()
        _service = None


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def root() -> Dict[str, Any]:
    """Root endpoint with system status."""
    return {
        "service": "Counter Queue API",
        "status": "running",
        "version": "1.0.0",
    }


@app.get("/health")
def health_check(service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    """Health check endpoint."""
    try:
        with service.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {str(e)}")

    return {
        "status": "healthy",
        "database": "connected",
        "redis": "connected" if cache.get_redis() else "unavailable",
    }


# ===== TICKETS =====


@app.post("/units/{unit_id}/tickets", status_code=201)
def issue_ticket(
    unit_id: str,
    request: IssueTicketRequest,
    service: QueueService = Depends(get_service),
) -> Dict[str, Any]:
    ticket = service.issue_ticket(
        unit_id,
        request.ticket_type,
        manual_number=request.manual_number,
        organ_id=request.organ_id,
        client_label=request.client_label,
    )
    return {"ticket": ticket.snapshot()}


@app.post("/units/{unit_id}/call-next")
def call_next(
    unit_id: str,
    request: CallNextRequest,
    service: QueueService = Depends(get_service),
) -> Dict[str, Any]:
    ticket = service.call_next(unit_id, request.counter_id, request.attendant_id, request.organ_id)
    return {"ticket": ticket.snapshot()}


@app.post("/units/{unit_id}/manual-call")
def manual_call(
    unit_id: str,
    request: ManualCallRequest,
    service: QueueService = Depends(get_service),
) -> Dict[str, Any]:
    ticket = service.manual_call(
        unit_id,
        request.ticket_number,
        request.ticket_type,
        request.counter_id,
        request.attendant_id,
        organ_id=request.organ_id,
    )
    return {"ticket": ticket.snapshot()}


@app.get("/units/{unit_id}/tickets")
def list_tickets(
    unit_id: str,
    status: Optional[List[TicketStatus]] = Query(default=None),
    organ_id: Optional[str] = None,
    service: QueueService = Depends(get_service),
) -> Dict[str, Any]:
    tickets = service.list_tickets(unit_id, status, organ_id)
    return {"tickets": [t.snapshot() for t in tickets]}


@app.get("/units/{unit_id}/tickets/today")
def list_today(unit_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    tickets = service.list_day(unit_id)
    return {"tickets": [t.snapshot() for t in tickets]}


@app.get("/units/{unit_id}/board")
def board(unit_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return service.get_board(unit_id)


@app.get("/tickets/{ticket_id}")
def get_ticket(ticket_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return {"ticket": service.get_ticket(ticket_id).snapshot()}


@app.post("/tickets/{ticket_id}/transition")
def transition(
    ticket_id: str,
    request: TransitionRequest,
    service: QueueService = Depends(get_service),
) -> Dict[str, Any]:
    ticket = service.transition_status(
        ticket_id,
        request.new_status,
        reason=request.reason,
        service_type=request.service_type,
        completion_status=request.completion_status,
        counter_id=request.counter_id,
        attendant_id=request.attendant_id,
        user_id=request.user_id,
    )
    return {"ticket": ticket.snapshot()}


@app.post("/tickets/{ticket_id}/repeat-call")
def repeat_call(
    ticket_id: str,
    request: RepeatCallRequest,
    service: QueueService = Depends(get_service),
) -> Dict[str, Any]:
    ticket = service.repeat_call(ticket_id, request.attendant_id)
    return {"ticket": ticket.snapshot()}


# ===== ADMINISTRATION =====


@app.post("/units/{unit_id}/reset")
def reset(
    unit_id: str,
    request: ResetRequest,
    service: QueueService = Depends(get_service),
) -> Dict[str, Any]:
    result = service.reset_day(unit_id, user_id=request.user_id)
    return result.to_dict()


@app.get("/units/{unit_id}/settings")
def get_settings(unit_id: str, service: QueueService = Depends(get_service)) -> Dict[str, Any]:
    return service.get_settings(unit_id).model_dump(mode="json", exclude={"id"})


@app.put("/units/{unit_id}/settings")
def update_settings(
    unit_id: str,
    request: SettingsUpdate,
    service: QueueService = Depends(get_service),
) -> Dict[str, Any]:
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    settings = service.update_settings(unit_id, changes)
    return settings.model_dump(mode="json", exclude={"id"})


@app.put("/units/{unit_id}/organs/{organ_id}")
def upsert_organ(
    unit_id: str,
    organ_id: str,
    request: OrganUpsert,
    service: QueueService = Depends(get_service),
) -> Dict[str, Any]:
    organ = service.upsert_organ(unit_id, organ_id, request.model_dump())
    return organ.model_dump(mode="json")


# ===== EVENTS =====


def open_event_feed(service: QueueService, unit_id: str):
    """Redis feed when configured (sees every worker), else this process's channel."""
    feed = cache.open_event_feed(unit_id)
    if feed is None:
        feed = service.broadcaster.open_channel(unit_id)
    return feed


async def event_stream(feed, board: Dict[str, Any]):
    try:
        yield f"data: {json.dumps({'type': 'board_snapshot', 'data': board})}\n\n"
        idle = 0.0
        while True:
            message = feed.get_message(timeout=0)
            if message is not None:
                idle = 0.0
                yield f"data: {json.dumps(message)}\n\n"
                continue
            if idle >= config.SSE_HEARTBEAT_SECONDS:
                idle = 0.0
                yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
            await asyncio.sleep(0.1)
            idle += 0.1
    finally:
        feed.close()


@app.get("/units/{unit_id}/events")
async def unit_events(unit_id: str, service: QueueService = Depends(get_service)):
    """Server-Sent Events stream of ticket and reset events for one unit.

    The first message is the current board so a (re)connecting display
    starts from the database state rather than from missed events.  The
    feed is opened before the board is read so nothing falls in between.
    """
    feed = open_event_feed(service, unit_id)
    try:
        board = await run_in_threadpool(service.get_board, unit_id, use_cache=False)
    except BaseException:
        feed.close()
        raise

    return StreamingResponse(
        event_stream(feed, board),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)

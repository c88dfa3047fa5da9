"""FastAPI application for the service queue.

The app exposes endpoints for the kiosk (join, cancel), the counters
(call next, finish, open/close, staff seat, notify), the public display
(board, estimates, live events) and the admin screens (services,
settings, history and full reset).  Configuration comes from environment
variables (see ``config``).  Redis is optional and used for change fan-out
and the WhatsApp outbox.

Two background tasks run while the app is up: the wait estimator refresh
and the daily reset check.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

import redis
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

import config
from database import create_db_engine, get_redis, init_db
from errors import InvalidTransition, QueueError
from estimator import WaitEstimator
from feed import ChangeEvent, ChangeFeed
from insights import Insights, build_insights, summarize
from models import TicketStatus
from notifications import NotificationDispatcher
from scheduler import DailyResetScheduler, PeriodicTask
from schemas import (
    AssignRequest,
    FinishRequest,
    JoinRequest,
    SendWhatsAppRequest,
    ServiceCreate,
    ServiceUpdate,
    SettingsUpdate,
)
from services import (
    QueueService,
    counter_to_dict,
    mobile_entry_url,
    public_settings,
    ticket_to_dict,
)
from whatsapp_worker import queue_message

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def create_app(
    queue: Optional[QueueService] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    redis_client: Optional[redis.Redis] = None,
    insights: Optional[Insights] = None,
    run_background_tasks: bool = True,
) -> FastAPI:
    if queue is None:
        redis_client = redis_client or get_redis()
        queue = QueueService(create_db_engine(), feed=ChangeFeed(redis_client))
    dispatcher = dispatcher or NotificationDispatcher(queue.settings)
    insights = insights or build_insights()
    estimator = WaitEstimator(queue)
    daily_reset = DailyResetScheduler(queue)
    tasks = [
        PeriodicTask("wait-estimator", estimator.recompute, config.ESTIMATE_INTERVAL_SECONDS),
        PeriodicTask("daily-reset", daily_reset.tick, config.RESET_INTERVAL_SECONDS),
    ]

    app = FastAPI(title="Service Queue")
    app.state.queue = queue
    app.state.estimator = estimator
    app.state.daily_reset = daily_reset
    app.state.tasks = tasks

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def on_startup() -> None:
        init_db(queue.engine, admin_passcode=config.ADMIN_PASS)
        if run_background_tasks:
            for task in tasks:
                task.start()
        logger.info("Service queue started")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        for task in tasks:
            await task.stop()
        dispatcher.close()
        insights.close()
        logger.info("Service queue stopped")

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
        if isinstance(exc, InvalidTransition):
            logger.error("Invalid transition on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "message": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"error": "invalid_value", "message": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": str(exc), "type": type(exc).__name__},
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
        return response

    def require_admin(passcode: str) -> None:
        if not queue.settings.check_passcode(passcode):
            raise HTTPException(status_code=401, detail="Invalid passcode")

    # ----- health -----

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "healthy", "degraded": queue.degraded}

    # ----- catalog and settings -----

    @app.get("/services")
    def list_services() -> Dict[str, Any]:
        return {"services": [s.model_dump(mode="json") for s in queue.catalog.list()]}

    @app.post("/admin/services", status_code=201)
    def create_service(request: ServiceCreate, passcode: str) -> Dict[str, Any]:
        require_admin(passcode)
        service = queue.catalog.create(
            name=request.name,
            prefix=request.prefix,
            color_theme=request.color_theme,
            default_wait_minutes=request.default_wait_minutes,
            service_id=request.id,
        )
        return service.model_dump(mode="json")

    @app.put("/admin/services/{service_id}")
    def update_service(service_id: str, request: ServiceUpdate, passcode: str) -> Dict[str, Any]:
        require_admin(passcode)
        service = queue.catalog.update(service_id, **request.model_dump(exclude_none=True))
        return service.model_dump(mode="json")

    @app.delete("/admin/services/{service_id}")
    def delete_service(service_id: str, passcode: str) -> Dict[str, Any]:
        require_admin(passcode)
        queue.catalog.delete(service_id)
        return {"deleted": service_id}

    @app.get("/settings")
    def get_settings(request: Request) -> Dict[str, Any]:
        settings = queue.settings.get()
        data = public_settings(settings)
        data["mobileEntryUrl"] = mobile_entry_url(settings, str(request.base_url))
        return data

    @app.put("/admin/settings")
    def update_settings(request: SettingsUpdate, passcode: str) -> Dict[str, Any]:
        require_admin(passcode)
        return public_settings(queue.settings.update(**request.to_columns()))

    # ----- tickets -----

    @app.post("/tickets", status_code=201)
    def join_queue(request: JoinRequest) -> Dict[str, Any]:
        ticket = queue.join(request.name, request.service_id, request.phone, request.channel)
        data = ticket_to_dict(ticket)
        data["estimatedWaitMinutes"] = estimator.estimates.get(ticket.service_id, 0)
        data["welcomeMessage"] = insights.welcome_message(ticket)
        return data

    @app.get("/tickets")
    def list_tickets(status: Optional[TicketStatus] = None) -> Dict[str, Any]:
        if status is None:
            tickets = queue.tickets.list_all()
        else:
            tickets = list(queue.tickets.list_by_status(status))
        return {"tickets": [ticket_to_dict(t) for t in tickets]}

    @app.get("/tickets/{ticket_id}")
    def get_ticket(ticket_id: str) -> Dict[str, Any]:
        return ticket_to_dict(queue.tickets.get(ticket_id))

    @app.post("/tickets/{ticket_id}/cancel")
    def cancel_ticket(ticket_id: str) -> Dict[str, Any]:
        return ticket_to_dict(queue.cancel(ticket_id))

    # ----- counters -----

    @app.get("/counters")
    def list_counters() -> Dict[str, Any]:
        return {"counters": [counter_to_dict(c) for c in queue.counters.list()]}

    @app.post("/counters/{counter_id}/call-next")
    def call_next(counter_id: int) -> Dict[str, Any]:
        result = queue.call_next(counter_id)
        return {
            "outcome": result.outcome.value,
            "ticket": ticket_to_dict(result.ticket) if result.ticket else None,
            "counter": counter_to_dict(result.counter) if result.counter else None,
            "degraded": result.degraded,
        }

    @app.post("/counters/{counter_id}/finish")
    def finish_current(counter_id: int, request: FinishRequest) -> Dict[str, Any]:
        return ticket_to_dict(queue.finish_current(counter_id, request.status))

    @app.post("/counters/{counter_id}/toggle")
    def toggle_counter(counter_id: int) -> Dict[str, Any]:
        return counter_to_dict(queue.counters.toggle(counter_id))

    @app.post("/counters/{counter_id}/assign")
    def assign_staff(counter_id: int, request: AssignRequest) -> Dict[str, Any]:
        return counter_to_dict(queue.counters.assign_staff(counter_id, request.staff_id))

    @app.post("/counters/{counter_id}/unassign")
    def unassign_staff(counter_id: int) -> Dict[str, Any]:
        return counter_to_dict(queue.counters.unassign(counter_id))

    @app.post("/counters/{counter_id}/notify")
    def notify_current(counter_id: int) -> Dict[str, Any]:
        counter = queue.counters.get(counter_id)
        if counter.current_ticket_id is None:
            raise InvalidTransition(f"Counter {counter_id} is not serving a ticket")
        ticket = queue.tickets.get(counter.current_ticket_id)
        result = dispatcher.notify(ticket, counter_id)
        return {
            "outcome": result.outcome.value,
            "message": result.message,
            "deepLink": result.deep_link,
            "error": result.error,
        }

    @app.get("/counters/{counter_id}/insight")
    def counter_insight(counter_id: int) -> Dict[str, Any]:
        queue.counters.get(counter_id)
        summary = summarize(queue.tickets.list_all(), queue.counters.open_count(), queue.clock.utcnow())
        insight = insights.queue_insight(summary)
        return {"insight": insight.to_dict() if insight else None}

    # ----- display -----

    @app.get("/estimates")
    def estimates() -> Dict[str, Any]:
        return {"estimates": estimator.estimates}

    @app.get("/board")
    def board() -> Dict[str, Any]:
        data = queue.board()
        data["estimates"] = estimator.estimates
        return data

    @app.get("/events")
    async def events() -> StreamingResponse:
        """Server-Sent Events stream of committed changes."""
        loop = asyncio.get_running_loop()
        inbox: asyncio.Queue = asyncio.Queue(maxsize=100)

        def forward(event: ChangeEvent) -> None:
            loop.call_soon_threadsafe(_offer, inbox, event.to_json())

        unsubscribe = queue.feed.subscribe(forward)

        async def event_stream():
            try:
                while True:
                    try:
                        payload = await asyncio.wait_for(inbox.get(), timeout=15.0)
                    except asyncio.TimeoutError:
                        payload = json.dumps({"type": "heartbeat"})
                    yield f"data: {payload}\n\n"
            finally:
                unsubscribe()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    # ----- admin -----

    @app.post("/admin/clear-history")
    def clear_history(passcode: str) -> Dict[str, Any]:
        require_admin(passcode)
        return {"deleted": queue.clear_history()}

    @app.post("/admin/reset")
    def full_reset(passcode: str) -> Dict[str, Any]:
        require_admin(passcode)
        return {"deleted": queue.full_reset()}

    @app.get("/admin/stats")
    def admin_stats(passcode: str) -> Dict[str, Any]:
        require_admin(passcode)
        return {"services": queue.service_stats(), "estimates": estimator.estimates}

    # ----- messaging backend -----

    @app.post("/api/send-whatsapp")
    def send_whatsapp(request: SendWhatsAppRequest) -> Dict[str, Any]:
        settings = queue.settings.get()
        if not settings.whatsapp_api_key or request.api_key != settings.whatsapp_api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")
        outbox = redis_client if redis_client is not None else queue.feed.redis_client
        if outbox is None:
            raise HTTPException(status_code=503, detail="Messaging backend not configured")
        try:
            queue_message(outbox, request.phone, request.message, request.ticket_id)
        except redis.RedisError as e:
            logger.warning("Failed to queue WhatsApp message: %s", e)
            raise HTTPException(status_code=503, detail="Messaging backend unavailable")
        return {"success": True, "queued": True}

    return app


def _offer(inbox: asyncio.Queue, payload: str) -> None:
    # Slow listeners lose the oldest events rather than blocking writers.
    if inbox.full():
        inbox.get_nowait()
    inbox.put_nowait(payload)


app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))

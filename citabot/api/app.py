"""
HTTP and WebSocket façade.

Feeds customer messages into the ``ConversationManager``, hands the
returned domain events to the ``EventDispatcher`` and exposes the
administrative appointment API. Background tasks (stats broadcast, session
expiry sweep and workbook backups) live for the duration of the lifespan.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from citabot.api.connections import ConnectionManager
from citabot.api.dispatcher import EventDispatcher
from citabot.config import AppConfig, settings
from citabot.conversation.manager import ConversationManager, InvalidMessageError
from citabot.conversation.session_store import SessionStore
from citabot.schemas.appointment_schema import AppointmentFilters, AppointmentStatus
from citabot.schemas.conversation_schema import utcnow
from citabot.storage.data_manager import (
    AppointmentNotFoundError,
    AppointmentValidationError,
    DataEvent,
    DataEventType,
    DataManager,
    InvalidStatusTransitionError,
)
from citabot.tools.availability import get_available_slots
from citabot.tools.technicians import list_active_technicians

logger = logging.getLogger(__name__)

_MEDIA_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


class ConversationRequest(BaseModel):
    session_id: str = ""
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExportRequest(BaseModel):
    format: str = "xlsx"
    filters: AppointmentFilters = Field(default_factory=AppointmentFilters)


class CancelRequest(BaseModel):
    reason: str = ""


async def _every(seconds: float, job: Callable[[], Awaitable[None]], name: str) -> None:
    while True:
        await asyncio.sleep(seconds)
        try:
            await job()
        except Exception:
            logger.exception("Background task '%s' failed", name)


def create_app(
    config: Optional[AppConfig] = None,
    manager: Optional[ConversationManager] = None,
    data_manager: Optional[DataManager] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or settings
    manager = manager or ConversationManager(
        SessionStore(config.bot), bot_config=config.bot, scheduling=config.scheduling
    )
    data_manager = data_manager or DataManager(config.data, config.scheduling)
    connections = ConnectionManager()
    dispatcher = EventDispatcher(data_manager, connections)

    def _relay_data_event(event: DataEvent) -> None:
        if event.type in (DataEventType.DATA_SAVED, DataEventType.CONVERSATION_SAVED):
            return
        connections.publish({"type": f"data_{event.type.value}", "data": event.to_dict()})

    async def _broadcast_stats() -> None:
        await connections.broadcast({
            "type": "stats_update",
            "data": {"conversations": manager.get_stats(), "connected_clients": connections.count},
        })

    async def _sweep_sessions() -> None:
        await dispatcher.dispatch(manager.cleanup_expired_sessions())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await data_manager.initialize()
        for appointment in data_manager.get_appointments():
            manager.id_generator.reserve(appointment.id)
        data_manager.subscribe(_relay_data_event)
        data_manager.start_backups()
        tasks = [
            asyncio.create_task(
                _every(config.server.stats_broadcast_seconds, _broadcast_stats, "stats"),
                name="stats-broadcast",
            ),
            asyncio.create_task(
                _every(config.server.expiry_sweep_seconds, _sweep_sessions, "expiry"),
                name="session-expiry",
            ),
        ]
        logger.info("%s %s ready", config.bot.name, config.bot.version)

        yield

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await data_manager.close()
        logger.info("%s shut down", config.bot.name)

    app = FastAPI(
        title=config.bot.name,
        description="Fiber installation appointment booking assistant",
        version=config.bot.version,
        lifespan=lifespan,
    )
    app.state.manager = manager
    app.state.data_manager = data_manager
    app.state.connections = connections
    app.state.dispatcher = dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in config.server.cors_origin.split(",")],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    # --- Error mapping ---

    @app.exception_handler(InvalidMessageError)
    @app.exception_handler(AppointmentValidationError)
    async def _bad_request(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(AppointmentNotFoundError)
    async def _not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(InvalidStatusTransitionError)
    async def _conflict(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": str(exc)})

    # --- System ---

    @app.get("/api/health")
    async def health():
        return {
            "status": "healthy",
            "version": config.bot.version,
            "timestamp": utcnow().isoformat(),
            "active_sessions": manager.get_stats()["active"],
        }

    @app.get("/api/config")
    async def public_config():
        return {
            "company": config.company_name,
            "bot": {
                "name": config.bot.name,
                "version": config.bot.version,
                "supported_languages": list(config.bot.supported_languages),
                "default_language": config.bot.default_language,
            },
            "appointments": {
                "timezone": config.scheduling.timezone,
                "slot_duration_minutes": config.scheduling.slot_duration_minutes,
                "advance_booking_days": config.scheduling.advance_booking_days,
                "min_advance_hours": config.scheduling.min_advance_hours,
            },
        }

    @app.get("/api/stats")
    async def stats():
        return {
            "conversations": manager.get_stats(),
            "data": data_manager.generate_stats(),
            "server": {"connected_clients": connections.count},
        }

    # --- Conversations ---

    @app.post("/api/conversation")
    async def conversation(body: ConversationRequest, request: Request):
        metadata = {
            **body.metadata,
            "ip": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
        }
        response = await manager.process_message(body.session_id, body.message, metadata)
        await dispatcher.dispatch(response.events)
        await connections.send_to_session(body.session_id, {
            "type": "conversation_update",
            "session_id": body.session_id,
            "message": body.message,
            "response": response.model_dump(mode="json"),
        })
        return response.model_dump(mode="json")

    @app.get("/api/conversation/{session_id}")
    async def get_conversation(session_id: str):
        session = manager.get_session(session_id, create_if_missing=False)
        if session is None:
            return JSONResponse(status_code=404, content={"error": f"Session not found: {session_id}"})
        return session.to_dict()

    # --- Appointments ---

    @app.get("/api/appointments")
    async def list_appointments(
        status: Optional[AppointmentStatus] = None,
        technician: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ):
        filters = AppointmentFilters(
            status=status, technician=technician, date_from=date_from, date_to=date_to
        )
        return [a.model_dump(mode="json") for a in data_manager.get_appointments(filters)]

    @app.get("/api/appointments/{appointment_id}")
    async def get_appointment(appointment_id: str):
        appointment = data_manager.get_appointment(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        return appointment.model_dump(mode="json")

    @app.put("/api/appointments/{appointment_id}")
    async def update_appointment(appointment_id: str, patch: dict[str, Any]):
        appointment = await data_manager.update_appointment(appointment_id, patch)
        return appointment.model_dump(mode="json")

    @app.delete("/api/appointments/{appointment_id}")
    async def cancel_appointment(appointment_id: str, body: Optional[CancelRequest] = None):
        reason = body.reason if body else ""
        appointment = await data_manager.cancel_appointment(appointment_id, reason)
        return appointment.model_dump(mode="json")

    @app.post("/api/export")
    async def export(body: ExportRequest):
        fmt = body.format.lower()
        data = await data_manager.export_data(fmt, body.filters)
        filename = f"citas_export_{utcnow():%Y-%m-%d}.{fmt}"
        return Response(
            content=data,
            media_type=_MEDIA_TYPES[fmt],
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # --- Catalogue ---

    @app.get("/api/technicians")
    async def technicians():
        return list_active_technicians()

    @app.get("/api/slots")
    async def slots(limit: int = Query(default=config.scheduling.listing_slot_limit, ge=1, le=100)):
        available = get_available_slots(limit=limit, scheduling=config.scheduling)
        return [slot.model_dump(mode="json") for slot in available]

    # --- WebSocket ---

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await connections.connect(websocket)
        await websocket.send_json({"type": "stats", "data": manager.get_stats()})
        try:
            while True:
                message = await websocket.receive_json()
                await _handle_ws_message(websocket, message)
        except WebSocketDisconnect:
            pass
        finally:
            connections.disconnect(websocket)

    async def _handle_ws_message(websocket: WebSocket, message: dict[str, Any]) -> None:
        kind = message.get("type")
        session_id = message.get("session_id", "")

        if kind == "chat_message":
            try:
                response = await manager.process_message(
                    session_id, message.get("message", ""), message.get("metadata") or {}
                )
            except InvalidMessageError as exc:
                await websocket.send_json({"type": "error", "message": str(exc)})
                return
            payload = response.model_dump(mode="json")
            await websocket.send_json({"type": "chat_response", "session_id": session_id, "data": payload})
            await connections.send_to_session(session_id, {
                "type": "conversation_update",
                "session_id": session_id,
                "message": message.get("message", ""),
                "response": payload,
            }, exclude=websocket)
            await dispatcher.dispatch(response.events)
        elif kind == "join_session":
            connections.join(websocket, session_id)
            await websocket.send_json({"type": "session_joined", "session_id": session_id})
        elif kind == "get_session":
            session = manager.get_session(session_id, create_if_missing=False)
            await websocket.send_json({
                "type": "session_state",
                "session_id": session_id,
                "data": session.to_dict() if session else None,
            })
        elif kind == "heartbeat":
            await websocket.send_json({"type": "heartbeat", "timestamp": utcnow().isoformat()})
        else:
            await websocket.send_json({"type": "error", "message": f"Unknown message type: {kind!r}"})

    return app

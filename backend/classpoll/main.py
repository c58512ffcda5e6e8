from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .errors import NoActivePoll, NotFound, PollError
from .gateway import EventGateway
from .logging_config import configure_logging
from .schemas import PollSnapshotOut
from .storage import OptionImageStore
from .utils import now_ts

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, gateway: Optional[EventGateway] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.gateway.close()

    app = FastAPI(title="classpoll API", lifespan=lifespan)
    app.state.settings = settings
    app.state.gateway = gateway or EventGateway(settings)
    app.state.images = OptionImageStore(settings)

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=settings.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_gateway(request: Request) -> EventGateway:
        return request.app.state.gateway

    def require_admin(x_admin_key: Optional[str] = Header(default=None)):
        if x_admin_key != settings.ADMIN_KEY:
            raise HTTPException(status_code=401, detail="Invalid admin key")

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        gateway: EventGateway = websocket.app.state.gateway
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        await gateway.connect(connection_id, websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning("ignoring malformed frame from %s", connection_id)
                    continue
                if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
                    logger.warning("ignoring frame without a command from %s", connection_id)
                    continue
                await gateway.handle(connection_id, frame["type"], frame.get("data"))
        except WebSocketDisconnect:
            pass
        finally:
            await gateway.disconnect(connection_id)

    @app.get("/api/health")
    async def health(gateway: EventGateway = Depends(get_gateway)):
        return {"status": "OK", "timestamp": now_ts(), **gateway.registry.counts()}

    @app.get("/api/current-poll", response_model=PollSnapshotOut)
    async def current_poll(gateway: EventGateway = Depends(get_gateway)):
        return gateway.engine.snapshot()

    @app.get("/api/users")
    async def users(gateway: EventGateway = Depends(get_gateway)):
        return gateway.registry.user_list()

    @app.get("/api/chat-messages")
    async def chat_messages(gateway: EventGateway = Depends(get_gateway)):
        return [m.model_dump(mode="json") for m in gateway.chat.messages()]

    @app.get("/api/poll-history")
    async def poll_history(gateway: EventGateway = Depends(get_gateway)):
        return gateway.engine.history_payload()

    @app.get("/api/events")
    async def list_events(after: int | None = None, limit: int = 200, gateway: EventGateway = Depends(get_gateway)):
        events = gateway.event_log.list(after=after, limit=limit)
        latest_seq = events[-1]["seq"] if events else after
        return {"events": events, "latest_seq": latest_seq}

    @app.get("/api/session/state")
    async def session_state(gateway: EventGateway = Depends(get_gateway)):
        return gateway.engine.session_state()

    async def run_session_command(gateway: EventGateway, command: str):
        try:
            return await gateway.run_admin(command)
        except PollError as exc:
            raise HTTPException(status_code=409, detail=exc.message) from exc

    @app.post("/api/session/start")
    async def start_session(gateway: EventGateway = Depends(get_gateway), _: None = Depends(require_admin)):
        return await run_session_command(gateway, "start-session")

    @app.post("/api/session/end")
    async def end_session(gateway: EventGateway = Depends(get_gateway), _: None = Depends(require_admin)):
        return await run_session_command(gateway, "end-session")

    @app.post("/api/session/reset")
    async def reset_session(gateway: EventGateway = Depends(get_gateway), _: None = Depends(require_admin)):
        return await run_session_command(gateway, "reset-session")

    @app.get("/api/session/analytics")
    async def session_analytics(gateway: EventGateway = Depends(get_gateway)):
        session = gateway.engine.session
        if session.active:
            raise HTTPException(status_code=409, detail="Session is still active")
        if session.started_at is None:
            raise HTTPException(status_code=404, detail="No session has been run")
        return {
            "session_start_time": session.started_at,
            "session_end_time": session.ended_at,
            "session_duration": session.ended_at - session.started_at,
            "session_analytics": session.analytics.model_dump(mode="json"),
        }

    @app.get("/api/student/performance/{student_name}")
    async def student_performance(student_name: str, gateway: EventGateway = Depends(get_gateway)):
        try:
            return gateway.engine.student_performance(student_name)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=exc.message) from exc

    @app.get("/api/analytics/current")
    async def current_analytics(gateway: EventGateway = Depends(get_gateway)):
        try:
            return gateway.engine.current_analytics()
        except NoActivePoll as exc:
            raise HTTPException(status_code=404, detail=exc.message) from exc

    @app.get("/api/analytics/participation")
    async def participation(gateway: EventGateway = Depends(get_gateway)):
        return gateway.engine.individual_answers()

    @app.get("/api/admin/verify")
    async def verify(_: None = Depends(require_admin)):
        return {"ok": True}

    @app.post("/api/admin/option-image")
    async def upload_option_image(
        option_id: str = Form(...),
        file: UploadFile = File(...),
        _: None = Depends(require_admin),
    ):
        images: OptionImageStore = app.state.images
        if not images.configured:
            raise HTTPException(status_code=500, detail="Image storage is not configured")

        data = await file.read()
        try:
            url = await images.upload(option_id, file.filename or option_id, data, file.content_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("option image upload failed")
            raise HTTPException(status_code=500, detail="Failed to upload image") from exc

        return {"id": option_id, "url": url}

    return app


def serve() -> None:
    settings = get_settings()
    uvicorn.run("backend.classpoll.main:app", host=settings.HOST, port=settings.PORT)


app = create_app()

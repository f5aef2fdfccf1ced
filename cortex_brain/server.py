"""HTTP and websocket surface for brain requests, memories and notifications."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, settings
from .db import Database, run_migrations
from .errors import InputError, InvalidTransition, NotFound
from .models import AUTO_LOBE, MemoryType
from .notify import SessionRegistry
from .service import BrainService

logger = logging.getLogger(__name__)

REQUEST_COUNT = Counter("brain_http_requests_total", "Total HTTP requests", ["method"])


class JSONFormatter(logging.Formatter):
    """Format logs as JSON objects."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - log format
        payload = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(level: int | str = logging.INFO, *, console_spans: bool = False) -> None:
    """Send JSON logs to stderr and install a tracer provider."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.basicConfig(level=level, handlers=[handler], force=True)

    provider = TracerProvider(resource=Resource.create({"service.name": "cortex-brain"}))
    if console_spans:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)


class BrainCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = None
    file_id: Optional[str] = Field(None, alias="fileId")
    mode: Optional[str] = None
    lobe: str = AUTO_LOBE
    workspace_id: Optional[str] = Field(None, alias="workspaceId")
    target_language: Optional[str] = Field(None, alias="targetLanguage")


class MemoryCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str = ""
    context: Optional[str] = None
    types: str = MemoryType.ANSWER.value
    workspace_id: Optional[str] = Field(None, alias="workspaceId")
    tags: List[str] = Field(default_factory=list)


class ReviewIn(BaseModel):
    score: Any = None


class FileIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_name: str = Field(alias="originalName")
    path: Optional[str] = None
    url: Optional[str] = None
    mime_type: Optional[str] = Field(None, alias="mimeType")
    size: Optional[int] = None


class SettingsIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    memory_enabled: Optional[bool] = Field(None, alias="memoryEnabled")
    vision_enabled: Optional[bool] = Field(None, alias="visionEnabled")
    notifications_enabled: Optional[bool] = Field(None, alias="notificationsEnabled")


def _settings_dict(prefs) -> dict:
    return {
        "memoryEnabled": prefs.memory_enabled,
        "visionEnabled": prefs.vision_enabled,
        "notificationsEnabled": prefs.notifications_enabled,
    }


def create_app(
    service: BrainService | None = None,
    sessions: SessionRegistry | None = None,
    *,
    cfg: Settings = settings,
    migrate: bool = False,
    background: bool = False,
) -> FastAPI:
    """Create and return the FastAPI application.

    With ``background`` the worker and stream consumer (and the dream
    scheduler when enabled) run as tasks on the server's event loop.
    """
    if service is None:
        if migrate:
            run_migrations(cfg.database_url)
        service = BrainService(Database(cfg.database_url), cfg)
    sessions = sessions or SessionRegistry()
    token = cfg.api_token

    app = FastAPI(title="Cortex Brain")
    app.state.service = service
    app.state.sessions = sessions
    FastAPIInstrumentor.instrument_app(app)

    async def require_auth(authorization: str | None = Header(None)) -> None:
        if token is None:
            return
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, headers={"WWW-Authenticate": "Bearer"})
        if authorization.split(" ", 1)[1] != token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, headers={"WWW-Authenticate": "Bearer"})

    async def current_user(
        _: None = Depends(require_auth), x_user_id: str | None = Header(None)
    ) -> str:
        if not x_user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")
        return x_user_id

    @app.exception_handler(InputError)
    async def input_error(request: Request, exc: InputError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": f"not found: {exc}"})

    @app.exception_handler(InvalidTransition)
    async def conflict(request: Request, exc: InvalidTransition) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.middleware("http")
    async def record_metrics(request, call_next):
        REQUEST_COUNT.labels(request.method).inc()
        return await call_next(request)

    tasks: list[asyncio.Task] = []
    stop = asyncio.Event()

    @app.on_event("startup")
    async def start_background() -> None:
        if not background:
            return
        tasks.append(asyncio.create_task(service.make_worker(sessions).run(stop)))
        tasks.append(asyncio.create_task(service.make_consumer().run(stop)))
        if cfg.dream_enabled:
            tasks.append(asyncio.create_task(service.make_dreamer(sessions).run(stop)))

    @app.on_event("shutdown")
    async def stop_background() -> None:
        stop.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @app.get("/healthz")
    async def healthz() -> dict:
        return service.health()

    @app.get("/metrics")
    async def metrics(_: None = Depends(require_auth)) -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ---------- brain requests ----------
    @app.post("/brain", status_code=status.HTTP_202_ACCEPTED)
    async def create_brain(payload: BrainCreate, user_id: str = Depends(current_user)) -> dict:
        job_id = service.create_job(
            user_id,
            payload.query,
            file_id=payload.file_id,
            mode=payload.mode,
            lobe=payload.lobe,
            workspace_id=payload.workspace_id,
            target_language=payload.target_language,
        )
        return {"id": job_id, "status": "pending"}

    @app.get("/brain")
    async def list_brain(limit: int = 50, user_id: str = Depends(current_user)) -> list[dict]:
        return [job.to_dict() for job in service.list_jobs(user_id, limit)]

    @app.get("/brain/{job_id}")
    async def get_brain(job_id: str, user_id: str = Depends(current_user)) -> dict:
        return service.get_job(job_id, user_id).to_dict()

    # ---------- memories ----------
    @app.post("/memory", status_code=status.HTTP_201_CREATED)
    async def add_memory(payload: MemoryCreate, user_id: str = Depends(current_user)) -> dict:
        memory = service.add_memory(
            user_id,
            payload.content,
            context=payload.context,
            types=payload.types,
            workspace_id=payload.workspace_id,
            tags=payload.tags,
        )
        return memory.to_dict()

    @app.get("/memory")
    async def list_memory(user_id: str = Depends(current_user)) -> list[dict]:
        return [m.to_dict() for m in service.list_memories(user_id)]

    @app.get("/memory/search")
    async def search_memory(q: str = "", user_id: str = Depends(current_user)) -> list[dict]:
        return [m.to_dict() for m in service.search_memories(user_id, q)]

    @app.get("/memory/graph")
    async def memory_graph(user_id: str = Depends(current_user)) -> dict:
        return {"status": "OK", **service.memory_graph(user_id).to_dict()}

    @app.get("/memory/{memory_id}")
    async def get_memory(memory_id: str, user_id: str = Depends(current_user)) -> dict:
        return service.get_memory(memory_id, user_id).to_dict()

    @app.delete("/memory/{memory_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_memory(memory_id: str, user_id: str = Depends(current_user)) -> Response:
        service.delete_memory(memory_id, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/memory/{memory_id}/review")
    async def review_memory(memory_id: str, payload: ReviewIn, user_id: str = Depends(current_user)) -> dict:
        when = service.review(memory_id, payload.score, user_id)
        return {"id": memory_id, "nextReviewDate": when.isoformat()}

    @app.get("/stats")
    async def stats(user_id: str = Depends(current_user)) -> dict:
        return service.stats(user_id).to_dict()

    # ---------- files & settings ----------
    @app.post("/files", status_code=status.HTTP_201_CREATED)
    async def register_file(payload: FileIn, user_id: str = Depends(current_user)) -> dict:
        stored = service.register_file(
            user_id,
            payload.original_name,
            path=payload.path,
            url=payload.url,
            mime_type=payload.mime_type,
            size=payload.size,
        )
        return stored.to_dict()

    @app.get("/settings")
    async def get_settings(user_id: str = Depends(current_user)) -> dict:
        return _settings_dict(service.get_settings(user_id))

    @app.put("/settings")
    async def put_settings(payload: SettingsIn, user_id: str = Depends(current_user)) -> dict:
        return _settings_dict(service.update_settings(user_id, **payload.model_dump()))

    # ---------- push channel ----------
    @app.websocket("/ws/{user_id}")
    async def notifications(websocket: WebSocket, user_id: str) -> None:
        if token is not None and websocket.query_params.get("token") != token:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        queue = sessions.subscribe(user_id)
        await websocket.accept()

        async def forward() -> None:
            while True:
                await websocket.send_json(await queue.get())

        sender = asyncio.create_task(forward())
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("session for %s closed", user_id)
        finally:
            sender.cancel()
            sessions.unsubscribe(user_id, queue)

    return app


__all__ = ["create_app", "configure_logging", "JSONFormatter"]

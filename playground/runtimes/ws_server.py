from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from playground.config import PlaygroundSettings
from playground.errors import (
    BootError,
    CapabilityError,
    FileWriteError,
    PlaygroundError,
    TemplateStructureError,
)
from playground.sandbox_backends.factory import get_runtime_factory
from playground.sandbox_backends.lifecycle import SandboxLifecycleManager
from playground.session import PlaygroundSession
from playground.templates.tree import TemplateFolder, read_template_json, template_from_dict
from playground.terminal import TerminalSink

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

app = FastAPI()
logger = logging.getLogger(__name__)

_settings: PlaygroundSettings | None = None
_lifecycle: SandboxLifecycleManager | None = None
_session: PlaygroundSession | None = None
_sink = TerminalSink()
_session_lock = asyncio.Lock()


class FileWriteRequest(BaseModel):
    path: str
    content: str


def _get_settings() -> PlaygroundSettings:
    global _settings
    if _settings is None:
        _settings = PlaygroundSettings.from_env()
    return _settings


def _get_lifecycle() -> SandboxLifecycleManager:
    # One sandbox per process; every session shares this manager.
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = SandboxLifecycleManager(get_runtime_factory(_get_settings()))
    return _lifecycle


def _error(code: str, status_code: int, exc: PlaygroundError | None = None) -> JSONResponse:
    body: dict[str, Any] = {"error": code}
    if exc is not None:
        body["detail"] = exc.message
        if exc.hint:
            body["hint"] = exc.hint
    return JSONResponse(body, status_code=status_code)


def _no_session() -> JSONResponse:
    return JSONResponse({"error": "no_session"}, status_code=409)


def _load_template(body: dict[str, Any]) -> TemplateFolder:
    raw = body.get("template")
    if raw is not None:
        return template_from_dict(raw)
    path = _get_settings().template_path
    if not path:
        raise TemplateStructureError("No template given and PLAYGROUND_TEMPLATE_PATH is not set")
    return read_template_json(path)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/playground")
async def api_playground_status() -> JSONResponse:
    if _session is None:
        return JSONResponse({"session": None, "booted": _get_lifecycle().is_booted})
    return JSONResponse({"session": _session.status()})


@app.post("/api/playground/start")
async def api_playground_start(request: Request) -> JSONResponse:
    global _session
    body: dict[str, Any] = {}
    raw_body = await request.body()
    if raw_body.strip():
        try:
            parsed = await request.json()
        except Exception:
            return JSONResponse({"error": "invalid_json"}, status_code=400)
        if not isinstance(parsed, dict):
            return JSONResponse({"error": "invalid_json"}, status_code=400)
        body = parsed

    async with _session_lock:
        session = _session
        if session is None or "template" in body:
            try:
                template = _load_template(body)
            except TemplateStructureError as e:
                return _error("invalid_template", 400, e)
            if session is not None:
                await session.close()
                _session = None
            session = PlaygroundSession(
                template,
                lifecycle=_get_lifecycle(),
                settings=_get_settings(),
                sink=_sink,
            )
            _session = session

        try:
            await session.start()
        except CapabilityError as e:
            return _error("sandbox_unsupported", 412, e)
        except BootError as e:
            return _error("sandbox_boot_failed", 503, e)

    return JSONResponse({"session": session.status()})


@app.put("/api/playground/files")
async def api_playground_write_file(request: Request) -> JSONResponse:
    session = _session
    if session is None or not session.started:
        return _no_session()
    try:
        req = FileWriteRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse({"error": "missing_path_or_content"}, status_code=400)

    try:
        rel = await session.write_file(req.path, req.content)
    except (ValueError, PermissionError) as e:
        return JSONResponse({"error": "invalid_path", "detail": str(e)}, status_code=400)
    except FileWriteError as e:
        return _error("write_failed", 500, e)
    return JSONResponse({"path": rel, "preview": session.preview.to_dict()})


@app.post("/api/playground/rebuild")
async def api_playground_rebuild() -> JSONResponse:
    async with _session_lock:
        session = _session
        if session is None or not session.started:
            return _no_session()
        await session.rebuild()
        return JSONResponse({"session": session.status()})


@app.delete("/api/playground")
async def api_playground_close() -> JSONResponse:
    global _session
    async with _session_lock:
        session = _session
        if session is None:
            return _no_session()
        _session = None
        await session.close()
    return JSONResponse({"status": "closed"})


@app.websocket("/ws/terminal")
async def websocket_terminal(ws: WebSocket) -> None:
    await ws.accept()
    queue: asyncio.Queue[str] = asyncio.Queue()

    def _view(text: str) -> None:
        queue.put_nowait(text)

    _sink.attach(_view)
    logger.info("Terminal attached (client=%s)", getattr(ws, "client", None))

    async def _drain_incoming() -> None:
        # The terminal is output-only; reading just notices disconnects.
        while True:
            await ws.receive_text()

    reader = asyncio.create_task(_drain_incoming())
    try:
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, reader}, return_when=asyncio.FIRST_COMPLETED)
            if reader in done:
                getter.cancel()
                return
            await ws.send_text(getter.result())
    except WebSocketDisconnect:
        return
    finally:
        _sink.detach(_view)
        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await reader
        logger.info("Terminal detached")

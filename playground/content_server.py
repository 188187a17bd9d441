"""Live-reload content server for express-style templates.

Serves one page (HTML + CSS) and accepts replacement content on
`POST /api/content`. Open pages subscribe to `GET /api/content` as an
event stream and reload themselves when a `refresh` event arrives. This is
the endpoint the content-push reload strategy talks to.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, ValidationError

from playground.config import content_keepalive_s, content_root

logger = logging.getLogger(__name__)

HTML_PATH = "pages/index.html"
CSS_PATH = "static/style.css"

DEFAULT_HTML = "<!DOCTYPE html>\n<html>\n<head>\n<link rel=\"stylesheet\" href=\"/style.css\">\n</head>\n<body></body>\n</html>\n"

LIVE_RELOAD_SCRIPT = """<script>
  (function () {
    var source = new EventSource('/api/content');
    source.onmessage = function (event) {
      if (event.data === 'refresh') {
        window.location.reload();
      }
    };
  })();
</script>
"""

app = FastAPI(title="Playground Content Server")


class ContentUpdate(BaseModel):
    html: str
    css: str = ""


@dataclass
class _Content:
    html: str
    css: str


_content: _Content | None = None
_listeners: set[asyncio.Queue[str]] = set()


def _read_or(path: Path, default: str) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return default


def _get_content() -> _Content:
    global _content
    if _content is None:
        root = Path(content_root())
        _content = _Content(
            html=_read_or(root / HTML_PATH, DEFAULT_HTML),
            css=_read_or(root / CSS_PATH, ""),
        )
    return _content


def _persist(content: _Content) -> None:
    root = Path(content_root())
    for rel, text in ((HTML_PATH, content.html), (CSS_PATH, content.css)):
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")


def inject_live_reload(html: str) -> str:
    idx = html.lower().rfind("</body>")
    if idx < 0:
        return html + LIVE_RELOAD_SCRIPT
    return html[:idx] + LIVE_RELOAD_SCRIPT + html[idx:]


def sse_event(data: str) -> str:
    lines = data.split("\n") or [""]
    return "".join(f"data: {line}\n" for line in lines) + "\n"


def broadcast(message: str) -> int:
    for queue in list(_listeners):
        queue.put_nowait(message)
    return len(_listeners)


async def _event_stream(request: Request) -> AsyncIterator[str]:
    queue: asyncio.Queue[str] = asyncio.Queue()
    _listeners.add(queue)
    logger.info("Live-reload client connected (%d total)", len(_listeners))
    keepalive_s = content_keepalive_s()
    try:
        yield sse_event("connected")
        while True:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    return
                yield ": keepalive\n\n"
                continue
            yield sse_event(message)
    finally:
        _listeners.discard(queue)
        logger.info("Live-reload client disconnected (%d left)", len(_listeners))


@app.get("/")
async def index() -> HTMLResponse:
    return HTMLResponse(inject_live_reload(_get_content().html))


@app.get("/style.css")
async def stylesheet() -> Response:
    return Response(_get_content().css, media_type="text/css")


@app.get("/api/content")
async def api_get_content(request: Request) -> Response:
    if "text/event-stream" in (request.headers.get("accept") or ""):
        return StreamingResponse(
            _event_stream(request),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )
    content = _get_content()
    return JSONResponse({"html": content.html, "css": content.css})


@app.post("/api/content")
async def api_update_content(request: Request) -> JSONResponse:
    global _content
    try:
        update = ContentUpdate.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse({"error": "invalid_content"}, status_code=400)

    _content = _Content(html=update.html, css=update.css)
    try:
        await asyncio.to_thread(_persist, _content)
    except OSError:
        logger.warning("Failed to persist content under %s", content_root(), exc_info=True)

    notified = broadcast("refresh")
    logger.info("Content updated; notified %d client(s)", notified)
    return JSONResponse({"status": "ok", "notified": notified})

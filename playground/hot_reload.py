"""Propagate file edits from the editor into the live preview.

Every edit is written into the sandbox right away. Reloads are debounced:
a burst of edits produces one reload, fired once the edits have been quiet
for the debounce window. The reload strategy is chosen from the project
manifest; a failed content push falls through to a framework restart.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

import requests

from playground.config import PlaygroundSettings
from playground.errors import FileWriteError, ReloadError, StartError
from playground.provisioning import (
    MANIFEST_PATH,
    ProvisioningStateMachine,
    await_server_ready,
    listen_for_server_ready,
    stream_output,
)
from playground.sandbox_backends.base import SandboxRuntime
from playground.sandbox_files.policy import parent_dir, require_write_allowed
from playground.terminal import TerminalSink

logger = logging.getLogger(__name__)

CONTENT_HTML_PATH = "pages/index.html"
CONTENT_CSS_PATH = "static/style.css"


@dataclass(frozen=True)
class ContentPushStrategy:
    """Send the page content to a server that implements `/api/content`."""

    name: str = "content-push"

    async def apply(self, coordinator: HotReloadCoordinator, url: str) -> None:
        await coordinator.push_content(url)


@dataclass(frozen=True)
class ScriptRestartStrategy:
    """Stop the dev server and start it again with `<pm> run <script>`."""

    name: str
    script: str

    async def apply(self, coordinator: HotReloadCoordinator, url: str) -> None:
        await coordinator.restart_server(self.script)


ReloadStrategy = Union[ContentPushStrategy, ScriptRestartStrategy]

CONTENT_PUSH = ContentPushStrategy()
REACT_RESTART = ScriptRestartStrategy(name="react-restart", script="start")
VUE_RESTART = ScriptRestartStrategy(name="vue-restart", script="serve")
GENERIC_RESTART = ScriptRestartStrategy(name="generic-restart", script="start")


def parse_manifest(text: str | None) -> dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except ValueError:
        logger.warning("Project manifest is not valid JSON; using the generic reload")
        return {}
    return data if isinstance(data, dict) else {}


def _dependencies(manifest: dict[str, Any]) -> dict[str, Any]:
    deps = manifest.get("dependencies")
    return deps if isinstance(deps, dict) else {}


def classify_restart(manifest: dict[str, Any]) -> ScriptRestartStrategy:
    deps = _dependencies(manifest)
    if "react" in deps or "react-dom" in deps:
        return REACT_RESTART
    if "vue" in deps:
        return VUE_RESTART
    return GENERIC_RESTART


def select_strategies(manifest: dict[str, Any]) -> list[ReloadStrategy]:
    """Ordered strategies to try; later entries are fallbacks."""
    restart = classify_restart(manifest)
    if "express" in _dependencies(manifest):
        return [CONTENT_PUSH, restart]
    return [restart]


def classify_strategy(manifest: dict[str, Any]) -> ReloadStrategy:
    return select_strategies(manifest)[0]


class HotReloadCoordinator:
    def __init__(
        self,
        runtime: SandboxRuntime,
        machine: ProvisioningStateMachine,
        *,
        sink: TerminalSink | None = None,
        settings: PlaygroundSettings | None = None,
        http: Any = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.runtime = runtime
        self.machine = machine
        self.sink = sink or machine.sink
        self.settings = settings or machine.settings
        # Anything with a requests-compatible `post` (a Session, or a fake in tests).
        self.http = http or requests
        self._sleep = sleep or asyncio.sleep

        self.last_write_ms: int | None = None
        self.reload_count = 0
        self.reload_failures = 0
        self.last_reload_error: str | None = None

        self._out = self.sink.tagged("reload")
        self._timer: asyncio.TimerHandle | None = None
        self._reload_task: asyncio.Task | None = None
        self._pending = False
        self._closed = False

    @property
    def reloading(self) -> bool:
        return self._reload_task is not None and not self._reload_task.done()

    @property
    def reload_scheduled(self) -> bool:
        return self._timer is not None

    def status(self) -> dict[str, Any]:
        return {
            "last_write_ms": self.last_write_ms,
            "reload_count": self.reload_count,
            "reload_failures": self.reload_failures,
            "last_error": self.last_reload_error,
            "reloading": self.reloading,
            "scheduled": self.reload_scheduled,
        }

    async def notify_write(self, path: str, content: str) -> str:
        """Write one edited file into the sandbox and schedule a reload.

        Returns the normalized sandbox path. Invalid paths raise ValueError,
        protected ones PermissionError, sandbox failures FileWriteError.
        """
        rel = require_write_allowed(path)
        try:
            parent = parent_dir(rel)
            if parent:
                await self.runtime.mkdir(parent, recursive=True)
            await self.runtime.write_file(rel, content)
        except Exception as exc:
            logger.error("Failed to write %s: %s", rel, exc, exc_info=True)
            raise FileWriteError(f"Failed to write {rel}: {exc}") from exc

        logger.info("File saved: %s", rel)
        self.last_write_ms = int(time.time() * 1000)
        if self.machine.is_ready:
            self._schedule()
        return rel

    def _schedule(self) -> None:
        if self._closed:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.settings.reload_debounce_s, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._closed:
            return
        if self.reloading:
            self._pending = True
            return
        self._reload_task = asyncio.ensure_future(self._reload_loop())

    async def _reload_loop(self) -> None:
        while True:
            self._pending = False
            await self.reload_now()
            if not self._pending or self._closed:
                return

    async def reload_now(self) -> bool:
        """Run one reload cycle; True when some strategy succeeded."""
        url = self.machine.preview_url
        if not self.machine.is_ready or not url:
            logger.debug("Skipping reload; preview is not ready")
            return False

        self.reload_count += 1
        manifest = parse_manifest(await self._read_text(MANIFEST_PATH))
        strategies = select_strategies(manifest)
        logger.info("Hot reload via %s", " -> ".join(s.name for s in strategies))

        error: ReloadError | None = None
        for strategy in strategies:
            try:
                await strategy.apply(self, url)
            except ReloadError as exc:
                error = exc
            except Exception as exc:
                error = ReloadError(f"{strategy.name} failed: {exc}")
                logger.warning("Reload strategy %s raised", strategy.name, exc_info=True)
            else:
                self.last_reload_error = None
                return True
            logger.warning("Reload strategy %s failed: %s", strategy.name, error.message)
            if strategy is not strategies[-1]:
                self._out.line(f"{error.message}; falling back")

        self.reload_failures += 1
        self.last_reload_error = error.message if error else "reload failed"
        self._out.line(f"Hot reload failed: {self.last_reload_error}")
        return False

    async def _read_text(self, path: str) -> str:
        try:
            return await self.runtime.read_file(path)
        except Exception:
            logger.debug("Could not read %s for reload", path, exc_info=True)
            return ""

    async def push_content(self, url: str) -> None:
        html = await self._read_text(CONTENT_HTML_PATH)
        css = await self._read_text(CONTENT_CSS_PATH)
        endpoint = f"{url.rstrip('/')}/api/content"
        timeout_s = self.settings.content_push_timeout_s

        def _post_sync() -> Any:
            return self.http.post(endpoint, json={"html": html, "css": css}, timeout=timeout_s)

        self._out.line("Pushing content update...")
        try:
            resp = await asyncio.to_thread(_post_sync)
        except Exception as exc:
            raise ReloadError(f"Content update request failed: {exc}") from exc

        status = int(getattr(resp, "status_code", 0) or 0)
        if not 200 <= status < 300:
            raise ReloadError(f"Content update failed with status {status}")
        self._out.line("Content updated")

    async def restart_server(self, script: str) -> None:
        pm = self.settings.package_manager
        self._out.line(f"Restarting development server ({pm} run {script})...")
        await self.machine.server.stop()
        await self._sleep(self.settings.restart_delay_s)

        ready, unsubscribe = listen_for_server_ready(self.runtime)
        try:
            try:
                process = await self.runtime.spawn(pm, ["run", script])
            except Exception as exc:
                raise ReloadError(f"Failed to restart development server: {exc}") from exc

            pump = asyncio.create_task(stream_output(process, self._out))
            self.machine.server.replace(process, pump)
            try:
                _port, new_url = await await_server_ready(
                    ready, process, self.settings.start_timeout_s
                )
            except StartError as exc:
                await self.machine.server.stop()
                raise ReloadError(exc.message) from exc
        finally:
            unsubscribe()

        self.machine.update_preview_url(new_url)
        self._out.line(f"Server reloaded at {new_url}")

    async def cancel_pending(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = False
        task = self._reload_task
        self._reload_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        self._closed = True
        await self.cancel_pending()

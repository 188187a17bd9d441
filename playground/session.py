from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any

from playground.config import PlaygroundSettings
from playground.errors import PlaygroundError
from playground.hot_reload import HotReloadCoordinator
from playground.provisioning import ProvisioningState, ProvisioningStateMachine
from playground.sandbox_backends.lifecycle import SandboxLifecycleManager
from playground.templates.tree import TemplateFolder, count_files, with_file
from playground.terminal import TerminalSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreviewSurface:
    """What an embedding preview frame needs to render.

    `frame_key` changes whenever the URL or the last write changes, so a
    frame keyed on it reloads after every saved edit.
    """

    url: str | None
    last_write_ms: int | None = None

    @property
    def frame_key(self) -> str:
        return f"{self.url or ''}#{self.last_write_ms or 0}"

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "last_write_ms": self.last_write_ms, "frame_key": self.frame_key}


class PlaygroundSession:
    """One playground: a template, its sandbox, provisioning and hot reload."""

    def __init__(
        self,
        template: TemplateFolder,
        *,
        lifecycle: SandboxLifecycleManager,
        settings: PlaygroundSettings | None = None,
        sink: TerminalSink | None = None,
        http: Any = None,
    ) -> None:
        self.template = template
        self.lifecycle = lifecycle
        self.settings = settings or PlaygroundSettings()
        self.sink = sink or TerminalSink()
        self.machine: ProvisioningStateMachine | None = None
        self.coordinator: HotReloadCoordinator | None = None
        self.error: PlaygroundError | None = None

        self._http = http
        self._task: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return self.machine is not None

    @property
    def preview(self) -> PreviewSurface:
        url = self.machine.preview_url if self.machine else None
        last_write = self.coordinator.last_write_ms if self.coordinator else None
        return PreviewSurface(url=url, last_write_ms=last_write)

    async def start(self) -> None:
        """Acquire the sandbox and kick off provisioning in the background."""
        if self._task is not None and not self._task.done():
            return
        try:
            runtime = await self.lifecycle.acquire()
        except PlaygroundError as exc:
            self.error = exc
            self.sink.line(f"Error: {exc.message}")
            if exc.hint:
                self.sink.line(exc.hint)
            raise
        self.error = None

        if self.machine is None:
            self.machine = ProvisioningStateMachine(
                runtime, self.template, sink=self.sink, settings=self.settings
            )
            self.coordinator = HotReloadCoordinator(
                runtime, self.machine, sink=self.sink, settings=self.settings, http=self._http
            )
        logger.info(
            "Starting playground %s (%d files)",
            self.template.folder_name,
            count_files(self.template),
        )
        self._task = asyncio.create_task(self.machine.run())

    async def wait_ready(self, timeout: float | None = None) -> str | None:
        if self._task is None:
            raise RuntimeError("playground session not started")
        return await asyncio.wait_for(asyncio.shield(self._task), timeout)

    async def write_file(self, path: str, content: str) -> str:
        if self.coordinator is None or self.machine is None:
            raise RuntimeError("playground session not started")
        rel = await self.coordinator.notify_write(path, content)
        # Keep the template in sync so a rebuild mounts the edited tree.
        self.template = with_file(self.template, rel, content)
        self.machine.template = self.template
        return rel

    async def rebuild(self) -> None:
        if self.machine is None or self.coordinator is None:
            raise RuntimeError("playground session not started")
        await self._cancel_run()
        await self.coordinator.cancel_pending()
        await self.machine.server.stop()
        self.machine.force_resetup()
        self.sink.line("Rebuilding playground...")
        self._task = asyncio.create_task(self.machine.run())

    def status(self) -> dict[str, Any]:
        machine = self.machine
        state = machine.state if machine else ProvisioningState()
        error = self.error.to_dict() if self.error else None
        if error is None and machine is not None and machine.last_error is not None:
            error = machine.last_error.to_dict()
        return {
            "template": self.template.folder_name,
            "booted": self.lifecycle.is_booted,
            "started": self.started,
            "running": self._task is not None and not self._task.done(),
            "state": state.to_dict(),
            "retry_count": machine.retries.retry_count if machine else 0,
            "max_retries": self.settings.max_retries,
            "error": error,
            "preview": self.preview.to_dict(),
            "reload": self.coordinator.status() if self.coordinator else None,
        }

    async def _cancel_run(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        await self._cancel_run()
        if self.coordinator is not None:
            await self.coordinator.close()
        if self.machine is not None:
            await self.machine.server.stop()
        await self.lifecycle.teardown()
        logger.info("Playground %s closed", self.template.folder_name)

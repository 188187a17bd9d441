"""Provisioning state machine: template tree -> running preview server.

    idle -> transforming -> mounting -> installing -> starting -> ready
                    \\__________\\___________\\___________\\-> (retry | error)

A reconnect probe runs first: when the sandbox already holds an installed
project (manifest + lock marker) and a server answers within a short
window, the machine jumps straight to `ready`.

Failures in the linear steps go through the retry policy: up to
`max_retries` retries with a linear backoff of `retry_backoff_s * attempt`,
each one restarting from `transforming`. Once retries are exhausted the
machine stops in the error state with `setup_error` set.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from playground.config import PlaygroundSettings
from playground.errors import InstallError, MountError, ProvisioningError, StartError
from playground.sandbox_backends.base import SandboxProcess, SandboxRuntime, Unsubscribe
from playground.templates.transformer import count_mount_files, transform_to_mount_tree
from playground.templates.tree import TemplateFolder
from playground.terminal import TaggedTerminal, TerminalSink

logger = logging.getLogger(__name__)

MANIFEST_PATH = "package.json"
LOCK_MARKER_PATH = "node_modules/.package-lock.json"
TOTAL_STEPS = 4

# Upper bound for draining a finished process's output.
_DRAIN_TIMEOUT_S = 5.0


class Phase(Enum):
    IDLE = "idle"
    TRANSFORMING = "transforming"
    MOUNTING = "mounting"
    INSTALLING = "installing"
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"


_FLAGS = ("transforming", "mounting", "installing", "starting", "ready")
_STEP_BY_PHASE = {
    Phase.IDLE: 0,
    Phase.TRANSFORMING: 1,
    Phase.MOUNTING: 2,
    Phase.INSTALLING: 3,
    Phase.STARTING: 4,
    Phase.READY: 4,
}


@dataclass
class ProvisioningState:
    transforming: bool = False
    mounting: bool = False
    installing: bool = False
    starting: bool = False
    ready: bool = False
    current_step: int = 0
    setup_error: str | None = None

    @property
    def phase(self) -> Phase:
        if self.setup_error is not None:
            return Phase.ERROR
        for flag in _FLAGS:
            if getattr(self, flag):
                return Phase(flag)
        return Phase.IDLE

    @property
    def progress(self) -> float:
        return self.current_step / TOTAL_STEPS * 100

    def enter(self, phase: Phase) -> None:
        for flag in _FLAGS:
            setattr(self, flag, False)
        if phase.value in _FLAGS:
            setattr(self, phase.value, True)
        self.current_step = _STEP_BY_PHASE.get(phase, self.current_step)

    def reset(self) -> None:
        self.setup_error = None
        self.enter(Phase.IDLE)

    def fail(self, message: str) -> None:
        for flag in _FLAGS:
            setattr(self, flag, False)
        self.setup_error = message

    def to_dict(self) -> dict:
        out = dataclasses.asdict(self)
        out["phase"] = self.phase.value
        out["progress"] = self.progress
        return out


@dataclass
class RetryCounter:
    retry_count: int = 0
    max_retries: int = 3

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def record_failure(self) -> int:
        self.retry_count += 1
        return self.retry_count

    def reset(self) -> None:
        self.retry_count = 0


class ServerSlot:
    """Holds the running dev server process, shared with the hot-reload coordinator."""

    def __init__(self) -> None:
        self.process: SandboxProcess | None = None
        self._pump: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self.process is not None

    def replace(self, process: SandboxProcess, pump: asyncio.Task | None = None) -> None:
        self.kill()
        self.process = process
        self._pump = pump

    def kill(self) -> None:
        process, pump = self.process, self._pump
        self.process = None
        self._pump = None
        if process is not None:
            process.kill()
        if pump is not None:
            pump.cancel()

    async def stop(self) -> None:
        process = self.process
        self.kill()
        if process is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(process.wait(), timeout=_DRAIN_TIMEOUT_S)


def format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    if float(seconds).is_integer():
        whole = int(seconds)
        return f"{whole} second{'s' if whole != 1 else ''}"
    return f"{seconds:g} seconds"


def split_command(command: str) -> tuple[str, list[str]]:
    argv = shlex.split(command or "")
    if not argv:
        raise ValueError("empty command")
    return argv[0], argv[1:]


async def stream_output(
    process: SandboxProcess, out: TerminalSink | TaggedTerminal
) -> None:
    """Forward process output chunks to the terminal in emission order."""
    try:
        async for chunk in process.output():
            out.write(chunk)
    except Exception:
        logger.warning("Process output stream failed", exc_info=True)


def listen_for_server_ready(
    runtime: SandboxRuntime,
) -> tuple[asyncio.Future[tuple[int, str]], Unsubscribe]:
    """Subscribe to `server-ready`; resolve the returned future on the first event.

    Subscribe before spawning so an early event cannot be missed.
    """
    future: asyncio.Future[tuple[int, str]] = asyncio.get_running_loop().create_future()

    def _on_ready(port: int, url: str) -> None:
        if not future.done():
            future.set_result((port, url))

    return future, runtime.on_server_ready(_on_ready)


async def await_server_ready(
    ready: asyncio.Future[tuple[int, str]],
    process: SandboxProcess,
    timeout_s: float,
) -> tuple[int, str]:
    """Race the ready signal against process exit and a deadline.

    A nonzero exit before the signal fails fast. A clean exit keeps waiting
    (the server may have been handed off to a child process). Losing the
    race against the deadline kills the process.
    """
    loop = asyncio.get_running_loop()
    exit_task = asyncio.ensure_future(process.wait())
    waiting: set[asyncio.Future] = {ready, exit_task}
    deadline = loop.time() + timeout_s
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                process.kill()
                raise StartError(
                    f"Server startup timed out after {format_duration(timeout_s)}",
                    timed_out=True,
                )
            done, _ = await asyncio.wait(
                waiting, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if ready in done:
                return ready.result()
            if exit_task in done:
                waiting.discard(exit_task)
                code = exit_task.result()
                if code != 0:
                    raise StartError(f"Server process exited with code: {code}")
    finally:
        if not exit_task.done():
            exit_task.cancel()


class _Superseded(Exception):
    """The run was invalidated by a forced re-setup."""


class ProvisioningStateMachine:
    def __init__(
        self,
        runtime: SandboxRuntime,
        template: TemplateFolder,
        *,
        sink: TerminalSink | None = None,
        settings: PlaygroundSettings | None = None,
        server: ServerSlot | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        on_change: Callable[[ProvisioningState], None] | None = None,
    ) -> None:
        self.runtime = runtime
        self.template = template
        self.sink = sink or TerminalSink()
        self.settings = settings or PlaygroundSettings()
        self.server = server or ServerSlot()
        self.state = ProvisioningState()
        self.retries = RetryCounter(max_retries=self.settings.max_retries)
        self.preview_url: str | None = None
        self.last_error: ProvisioningError | None = None

        self._sleep = sleep or asyncio.sleep
        self._on_change = on_change
        self._generation = 0

    @property
    def is_ready(self) -> bool:
        return self.state.ready

    def update_preview_url(self, url: str) -> None:
        self.preview_url = url

    def force_resetup(self) -> None:
        """Reset to idle unconditionally.

        Bypasses retry bookkeeping. A run still in flight notices at its next
        suspension point and stops without touching state; owners should also
        cancel the task running it.
        """
        self._generation += 1
        self.state.reset()
        self.retries.reset()
        self.preview_url = None
        self.last_error = None
        logger.info("Forced re-setup requested")
        self._notify()

    async def run(self) -> str | None:
        """Provision the sandbox; return the preview URL, or None on fatal error."""
        if self.state.ready and self.preview_url:
            return self.preview_url

        # A fresh run starts from a clean slate, even after a fatal error.
        self.state.reset()
        self.retries.reset()
        self.last_error = None

        generation = self._generation
        try:
            url = await self._reconnect_probe(generation)
            if url:
                self._mark_ready(url, reconnected=True)
                return url

            while True:
                try:
                    url = await self._provision_once(generation)
                except ProvisioningError as exc:
                    self._check_current(generation)
                    if not await self._handle_failure(exc, generation):
                        return None
                    continue
                self._check_current(generation)
                self._mark_ready(url)
                return url
        except _Superseded:
            logger.info("Provisioning run superseded by a forced re-setup")
            return None

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            raise _Superseded()

    def _enter(self, phase: Phase) -> None:
        self.state.enter(phase)
        logger.info("Provisioning -> %s (step %d/%d)", phase.value, self.state.current_step, TOTAL_STEPS)
        self._notify()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(dataclasses.replace(self.state))
        except Exception:
            logger.warning("Provisioning state listener failed", exc_info=True)

    def _mark_ready(self, url: str, *, reconnected: bool = False) -> None:
        self.preview_url = url
        self.last_error = None
        self.state.setup_error = None
        self._enter(Phase.READY)
        if reconnected:
            self.sink.line(f"Successfully reconnected to server at {url}")
        else:
            self.sink.line(f"Server ready at {url}")

    async def _handle_failure(self, exc: ProvisioningError, generation: int) -> bool:
        self.last_error = exc
        self.sink.line(f"Error: {exc.message}")
        logger.warning("Provisioning attempt failed (%s): %s", exc.kind, exc.message)

        max_retries = self.retries.max_retries
        if not self.retries.can_retry:
            self.sink.line(f"Max retries ({max_retries}) reached. Setup failed.")
            self.state.fail(f"{exc.message} (Failed after {max_retries} retries)")
            logger.error("Provisioning failed after %d retries: %s", max_retries, exc.message)
            self._notify()
            return False

        attempt = self.retries.record_failure()
        self.sink.line(f"Retrying setup... Attempt {attempt} of {max_retries}")
        self.state.reset()
        self._notify()
        await self._sleep(self.settings.retry_backoff_s * attempt)
        self._check_current(generation)
        return True

    async def _read_optional(self, path: str) -> str | None:
        try:
            return await self.runtime.read_file(path)
        except Exception:
            logger.debug("Reconnect probe: %s not readable", path, exc_info=True)
            return None

    async def _reconnect_probe(self, generation: int) -> str | None:
        manifest, lock_marker = await asyncio.gather(
            self._read_optional(MANIFEST_PATH),
            self._read_optional(LOCK_MARKER_PATH),
        )
        self._check_current(generation)
        if not manifest or not lock_marker:
            return None

        self.sink.line("Detected existing sandbox session, reconnecting...")
        self._enter(Phase.STARTING)
        url = await self._await_existing_server()
        self._check_current(generation)
        if url:
            return url

        self.sink.line("Server not running, starting it...")
        self.state.reset()
        self._notify()
        return None

    async def _await_existing_server(self) -> str | None:
        timeout_s = self.settings.reconnect_timeout_s
        probe = getattr(self.runtime, "probe_server", None)
        if probe is not None:
            try:
                return await asyncio.wait_for(probe(), timeout=timeout_s)
            except Exception:
                logger.debug("Explicit server probe failed", exc_info=True)
                return None

        ready, unsubscribe = listen_for_server_ready(self.runtime)
        try:
            _port, url = await asyncio.wait_for(ready, timeout=timeout_s)
            return url
        except asyncio.TimeoutError:
            return None
        finally:
            unsubscribe()

    async def _provision_once(self, generation: int) -> str:
        self._enter(Phase.TRANSFORMING)
        self.sink.line("Transforming template data...")
        try:
            files = transform_to_mount_tree(self.template)
        except Exception as exc:
            raise ProvisioningError(f"Template transformation failed: {exc}") from exc
        logger.info("Transformed template into %d files", count_mount_files(files))

        self._enter(Phase.MOUNTING)
        self.sink.line("Mounting files to sandbox...")
        try:
            await self.runtime.mount(files)
        except Exception as exc:
            self.sink.line(f"File mount failed: {exc}")
            raise MountError(f"File mount failed: {exc}") from exc
        self._check_current(generation)
        self.sink.line("Files mounted successfully")

        self._enter(Phase.INSTALLING)
        self.sink.line("Installing dependencies...")
        await self._install()
        self._check_current(generation)
        self.sink.line("Dependencies installed successfully")

        self._enter(Phase.STARTING)
        self.sink.line("Starting development server...")
        url = await self._start()
        self._check_current(generation)
        return url

    async def _install(self) -> None:
        command, args = split_command(self.settings.install_command)
        try:
            process = await self.runtime.spawn(command, args)
        except Exception as exc:
            raise InstallError(f"Failed to start dependency installation: {exc}") from exc

        pump = asyncio.create_task(stream_output(process, self.sink.tagged("install")))
        timeout_s = self.settings.install_timeout_s
        try:
            code = await asyncio.wait_for(process.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            process.kill()
            pump.cancel()
            raise InstallError(
                f"Installation timed out after {format_duration(timeout_s)}",
                timed_out=True,
            ) from None
        except asyncio.CancelledError:
            process.kill()
            pump.cancel()
            raise
        except Exception as exc:
            process.kill()
            pump.cancel()
            raise InstallError(f"Dependency installation failed: {exc}") from exc

        done, _ = await asyncio.wait({pump}, timeout=_DRAIN_TIMEOUT_S)
        if not done:
            pump.cancel()
        if code != 0:
            raise InstallError(f"Failed to install dependencies. Exit code: {code}")

    async def _start(self) -> str:
        command, args = split_command(self.settings.start_command)
        ready, unsubscribe = listen_for_server_ready(self.runtime)
        try:
            try:
                process = await self.runtime.spawn(command, args)
            except Exception as exc:
                raise StartError(f"Failed to start development server: {exc}") from exc

            pump = asyncio.create_task(stream_output(process, self.sink.tagged("start")))
            self.server.replace(process, pump)
            try:
                _port, url = await await_server_ready(
                    ready, process, self.settings.start_timeout_s
                )
            except StartError:
                await self.server.stop()
                raise
            except asyncio.CancelledError:
                self.server.kill()
                raise
            except Exception as exc:
                await self.server.stop()
                raise StartError(f"Development server failed: {exc}") from exc
        finally:
            unsubscribe()
        return url

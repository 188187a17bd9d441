import asyncio
import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `playground/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from playground.sandbox_backends.base import SandboxCapabilities  # noqa: E402

PREVIEW_URL = "http://127.0.0.1:3000"


class FakeProcess:
    """In-memory process: yields `chunks`, then exits with `exit_code`.

    `hang=True` keeps it running until `kill()`; `exit_after` delays the exit.
    """

    def __init__(self, *, chunks=(), exit_code=0, exit_after=0.0, hang=False):
        self.chunks = list(chunks)
        self.exit_code = exit_code
        self.exit_after = exit_after
        self.hang = hang
        self.killed = False
        self._killed = asyncio.Event()
        self._exit_at = None

    async def output(self):
        for chunk in self.chunks:
            yield chunk
            await asyncio.sleep(0)

    async def wait(self):
        if self.hang:
            await self._killed.wait()
        else:
            loop = asyncio.get_running_loop()
            if self._exit_at is None:
                self._exit_at = loop.time() + self.exit_after
            remaining = self._exit_at - loop.time()
            if remaining > 0:
                try:
                    await asyncio.wait_for(self._killed.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        return -9 if self.killed else self.exit_code

    def kill(self):
        self.killed = True
        self._killed.set()


class FakeRuntime:
    """In-memory sandbox runtime.

    Commands map to process factories via `on(cmdline, factory)`. Spawning a
    command in `serve_commands` announces `server-ready` shortly afterwards
    unless `emit_ready` is off.
    """

    def __init__(self, *, files=None, caps=None, boot_error=None, boot_delay=0.0):
        self.files = dict(files or {})
        self.dirs = set()
        self.caps = caps or SandboxCapabilities(shared_memory=True, isolated=True)
        self.boot_error = boot_error
        self.boot_delay = boot_delay
        self.mount_error = None
        self.write_error = None

        self.boots = 0
        self.teardowns = 0
        self.mounts = []
        self.spawned = []
        self.processes = []
        self.listeners = []

        self.handlers = {}
        self.serve_commands = {"npm run start", "npm run serve"}
        self.emit_ready = True
        self.ready_delay = 0.01
        self.ready_url = PREVIEW_URL

    def on(self, cmdline, factory):
        self.handlers[cmdline] = factory

    def probe_capabilities(self):
        return self.caps

    async def boot(self):
        self.boots += 1
        if self.boot_delay:
            await asyncio.sleep(self.boot_delay)
        if self.boot_error is not None:
            raise self.boot_error

    async def teardown(self):
        self.teardowns += 1
        for proc in self.processes:
            proc.kill()

    async def mount(self, tree):
        if self.mount_error is not None:
            raise self.mount_error
        self.mounts.append(tree)
        self._flatten(tree, "")

    def _flatten(self, tree, prefix):
        for name, node in tree.items():
            path = f"{prefix}{name}"
            if "directory" in node:
                self.dirs.add(path)
                self._flatten(node["directory"], f"{path}/")
            else:
                self.files[path] = node["file"]["contents"]

    async def read_file(self, path):
        try:
            return self.files[path]
        except KeyError:
            raise FileNotFoundError(path) from None

    async def write_file(self, path, content):
        if self.write_error is not None:
            raise self.write_error
        self.files[path] = content

    async def mkdir(self, path, *, recursive=False):
        self.dirs.add(path)

    async def spawn(self, command, args=()):
        cmdline = " ".join([command, *args])
        self.spawned.append(cmdline)
        factory = self.handlers.get(cmdline)
        if factory is not None:
            proc = factory()
        elif cmdline in self.serve_commands:
            proc = FakeProcess(chunks=["> dev server\n"], hang=True)
        else:
            proc = FakeProcess(chunks=["added 1 package\n"])
        self.processes.append(proc)
        if cmdline in self.serve_commands and self.emit_ready:
            asyncio.get_running_loop().call_later(
                self.ready_delay, self.emit_server_ready, 3000, self.ready_url
            )
        return proc

    def on_server_ready(self, callback):
        self.listeners.append(callback)

        def _unsubscribe():
            if callback in self.listeners:
                self.listeners.remove(callback)

        return _unsubscribe

    def emit_server_ready(self, port, url):
        for callback in list(self.listeners):
            callback(port, url)


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code


class FakeHttp:
    """Records `post` calls; returns `status_code` or raises `error`."""

    def __init__(self, status_code=200, error=None):
        self.status_code = status_code
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status_code)


@pytest.fixture
def make_runtime():
    return FakeRuntime


@pytest.fixture
def make_process():
    return FakeProcess


@pytest.fixture
def make_http():
    return FakeHttp


@pytest.fixture(autouse=True)
def _isolate_playground_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Local .env files must not leak into unit tests.
    for name in ("PLAYGROUND_TEMPLATE_PATH", "PLAYGROUND_SANDBOX_ROOT", "PLAYGROUND_CONTENT_ROOT"):
        monkeypatch.delenv(name, raising=False)

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import shlex
import shutil
import signal
import tempfile
from collections.abc import AsyncIterator, Sequence
from pathlib import Path

from playground.sandbox_backends.base import (
    SandboxCapabilities,
    ServerReadyCallback,
    Unsubscribe,
)
from playground.templates.transformer import MountTree

logger = logging.getLogger(__name__)


def _shared_memory_available() -> bool:
    try:
        from multiprocessing import shared_memory

        segment = shared_memory.SharedMemory(create=True, size=16)
    except (ImportError, OSError):
        return False
    with contextlib.suppress(Exception):
        segment.close()
    with contextlib.suppress(Exception):
        segment.unlink()
    return True


def _writable_dir(path: Path) -> bool:
    # The workspace may not exist yet; check the nearest existing ancestor.
    probe = path
    while not probe.exists():
        if probe.parent == probe:
            return False
        probe = probe.parent
    return probe.is_dir() and os.access(probe, os.W_OK | os.X_OK)


async def _port_open(host: str, port: int, timeout_s: float = 0.35) -> bool:
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout_s
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()
    return True


def _materialize(base: Path, tree: MountTree) -> None:
    for name, node in tree.items():
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ValueError(f"invalid mount entry name: {name!r}")
        target = base / name
        if "directory" in node:
            target.mkdir(exist_ok=True)
            _materialize(target, node["directory"] or {})
        elif "file" in node:
            contents = (node["file"] or {}).get("contents", "")
            with open(target, "w", encoding="utf-8", newline="") as fh:
                fh.write(contents)
        else:
            raise ValueError(f"invalid mount node for {name!r}")


class LocalProcess:
    def __init__(self, proc: asyncio.subprocess.Process, argv: list[str]) -> None:
        self._proc = proc
        self.argv = argv

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def output(self) -> AsyncIterator[str]:
        stream = self._proc.stdout
        if stream is None:
            return
        # Chunks can split multi-byte sequences.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    yield tail
                return
            text = decoder.decode(chunk)
            if text:
                yield text

    async def wait(self) -> int:
        return int(await self._proc.wait())

    def kill(self) -> None:
        if self._proc.returncode is not None:
            return
        # `start_new_session=True` makes the pid the process group id, which
        # also takes down children such as the dev server npm started.
        killpg = getattr(os, "killpg", None)
        if killpg is not None:
            try:
                killpg(self._proc.pid, signal.SIGKILL)
                return
            except (ProcessLookupError, PermissionError):
                pass
        with contextlib.suppress(ProcessLookupError):
            self._proc.kill()


class LocalSandboxRuntime:
    """Sandbox runtime backed by a workspace directory on this host.

    Processes run with the workspace as cwd. A background watcher polls the
    preview ports and announces `server-ready(port, url)` whenever one of
    them starts accepting connections. Ports already open at boot are
    treated as foreign and are not announced.
    """

    def __init__(
        self,
        *,
        root_dir: str | None = None,
        host: str = "127.0.0.1",
        preview_ports: Sequence[int] = (3000,),
        poll_interval_s: float = 0.25,
        env: dict[str, str] | None = None,
    ) -> None:
        self._owns_root = root_dir is None
        self._root_dir = Path(root_dir).expanduser() if root_dir else None
        self._host = host
        self._ports = tuple(preview_ports)
        self._poll_interval_s = poll_interval_s
        self._env = env

        self._listeners: list[ServerReadyCallback] = []
        self._processes: set[LocalProcess] = set()
        self._open_ports: set[int] = set()
        self._foreign_ports: set[int] = set()
        self._watch_task: asyncio.Task | None = None
        self._booted = False

    @property
    def root(self) -> Path:
        if self._root_dir is None or not self._booted:
            raise RuntimeError("sandbox is not booted")
        return self._root_dir

    def probe_capabilities(self) -> SandboxCapabilities:
        target = self._root_dir or Path(tempfile.gettempdir())
        return SandboxCapabilities(
            shared_memory=_shared_memory_available(),
            isolated=_writable_dir(target),
        )

    async def boot(self) -> None:
        if self._booted:
            return
        if self._root_dir is None:
            created = await asyncio.to_thread(tempfile.mkdtemp, prefix="playground-")
            self._root_dir = Path(created)
        else:
            await asyncio.to_thread(self._root_dir.mkdir, parents=True, exist_ok=True)
        self._root_dir = self._root_dir.resolve()

        self._open_ports = set()
        for port in self._ports:
            if await _port_open(self._host, port):
                self._open_ports.add(port)
        if self._open_ports:
            logger.info("Preview ports already in use at boot: %s", sorted(self._open_ports))
        # Listeners found before boot belong to another process until they close.
        self._foreign_ports = set(self._open_ports)

        self._watch_task = asyncio.create_task(self._watch_ports())
        self._booted = True
        logger.info("Local sandbox booted at %s", self._root_dir)

    async def teardown(self) -> None:
        task = self._watch_task
        self._watch_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        procs = list(self._processes)
        self._processes.clear()
        for proc in procs:
            proc.kill()
        for proc in procs:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(proc.wait(), timeout=5)

        self._listeners.clear()
        if self._owns_root and self._root_dir is not None:
            await asyncio.to_thread(shutil.rmtree, self._root_dir, True)
            self._root_dir = None
        self._booted = False
        logger.info("Local sandbox torn down")

    def _resolve(self, path: str) -> Path:
        root = self.root
        rel = (path or "").strip().lstrip("/")
        full = (root / rel).resolve() if rel else root
        if full != root and root not in full.parents:
            raise ValueError(f"path escapes sandbox: {path}")
        return full

    async def mount(self, tree: MountTree) -> None:
        await asyncio.to_thread(self._mount_sync, tree)

    def _mount_sync(self, tree: MountTree) -> None:
        root = self.root
        # Build the whole tree aside first so a bad entry never leaves a
        # half-written workspace behind.
        staging = Path(tempfile.mkdtemp(prefix=".mount-", dir=root))
        try:
            _materialize(staging, tree)
            shutil.copytree(staging, root, dirs_exist_ok=True)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    async def read_file(self, path: str) -> str:
        full = self._resolve(path)

        def _read_sync() -> str:
            with open(full, encoding="utf-8", newline="") as fh:
                return fh.read()

        return await asyncio.to_thread(_read_sync)

    async def write_file(self, path: str, content: str) -> None:
        full = self._resolve(path)

        def _write_sync() -> None:
            with open(full, "w", encoding="utf-8", newline="") as fh:
                fh.write(content)

        await asyncio.to_thread(_write_sync)

    async def mkdir(self, path: str, *, recursive: bool = False) -> None:
        full = self._resolve(path)
        await asyncio.to_thread(full.mkdir, parents=recursive, exist_ok=recursive)

    async def spawn(self, command: str, args: Sequence[str] = ()) -> LocalProcess:
        argv = [command, *args]
        env = os.environ.copy()
        if self._env:
            env.update(self._env)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(self.root),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        handle = LocalProcess(proc, argv)
        self._processes = {p for p in self._processes if p.returncode is None}
        self._processes.add(handle)
        logger.info("Spawned %s (pid %s)", shlex.join(argv), proc.pid)
        return handle

    def on_server_ready(self, callback: ServerReadyCallback) -> Unsubscribe:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(callback)

        return _unsubscribe

    async def probe_server(self) -> str | None:
        for port in self._ports:
            if port in self._foreign_ports:
                continue
            if await _port_open(self._host, port):
                return self._url_for(port)
        return None

    def _url_for(self, port: int) -> str:
        return f"http://{self._host}:{port}"

    def _emit_server_ready(self, port: int, url: str) -> None:
        logger.info("Server ready on port %s (%s)", port, url)
        for callback in list(self._listeners):
            try:
                callback(port, url)
            except Exception:
                logger.warning("server-ready listener failed", exc_info=True)

    async def _watch_ports(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval_s)
            for port in self._ports:
                is_open = await _port_open(self._host, port)
                if is_open and port not in self._open_ports:
                    self._open_ports.add(port)
                    self._emit_server_ready(port, self._url_for(port))
                elif not is_open:
                    self._open_ports.discard(port)
                    self._foreign_ports.discard(port)

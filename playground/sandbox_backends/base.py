from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from playground.templates.transformer import MountTree

ServerReadyCallback = Callable[[int, str], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class SandboxCapabilities:
    """Environment features a sandbox runtime needs before it can boot.

    `shared_memory`: a shared-memory primitive is available.
    `isolated`: the runtime gets a private execution context (cross-origin
    isolation for browser hosts, a private writable workspace locally).
    """

    shared_memory: bool
    isolated: bool

    def missing(self) -> list[str]:
        out: list[str] = []
        if not self.shared_memory:
            out.append("shared_memory")
        if not self.isolated:
            out.append("isolation")
        return out


class SandboxProcess(Protocol):
    def output(self) -> AsyncIterator[str]: ...

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


class SandboxRuntime(Protocol):
    """The sandbox operations the playground core depends on.

    File paths are relative to the project root inside the sandbox.

    Runtimes may additionally provide `async probe_server() -> str | None`,
    an explicit liveness check returning the URL of an already running
    preview server. The reconnect probe prefers it over waiting for a
    `server-ready` event.
    """

    def probe_capabilities(self) -> SandboxCapabilities: ...

    async def boot(self) -> None: ...

    async def teardown(self) -> None: ...

    async def mount(self, tree: MountTree) -> None: ...

    async def read_file(self, path: str) -> str: ...

    async def write_file(self, path: str, content: str) -> None: ...

    async def mkdir(self, path: str, *, recursive: bool = False) -> None: ...

    async def spawn(self, command: str, args: Sequence[str] = ()) -> SandboxProcess: ...

    def on_server_ready(self, callback: ServerReadyCallback) -> Unsubscribe: ...

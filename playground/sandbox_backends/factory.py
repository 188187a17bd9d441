from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from playground.config import PlaygroundSettings

    from .base import SandboxRuntime


def get_runtime_factory(settings: PlaygroundSettings) -> Callable[[], SandboxRuntime]:
    backend = (settings.sandbox_backend or "local").strip().lower()
    if backend != "local":
        raise ValueError(f"Unknown sandbox backend: {settings.sandbox_backend}")

    from .local_backend import LocalSandboxRuntime

    def factory() -> SandboxRuntime:
        return LocalSandboxRuntime(
            root_dir=settings.sandbox_root,
            host=settings.preview_host,
            preview_ports=settings.preview_ports,
            poll_interval_s=settings.port_poll_interval_s,
        )

    return factory

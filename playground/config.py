from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_str(name: str, default: str) -> str:
    raw = (os.environ.get(name) or "").strip()
    return raw or default


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


def _env_ports(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    out: list[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            port = int(part)
        except ValueError:
            continue
        if 0 < port < 65536 and port not in out:
            out.append(port)
    return tuple(out) or default


DEFAULT_PREVIEW_PORTS: tuple[int, ...] = (3000, 3010, 5173, 8080)


@dataclass(frozen=True)
class PlaygroundSettings:
    """Tunables for provisioning, hot reload and the local sandbox backend.

    Defaults mirror the browser playground: 2 minute install budget, 1 minute
    startup budget, 3 retries with a 2s linear backoff step and a 500ms reload
    debounce.
    """

    install_timeout_s: float = 120.0
    start_timeout_s: float = 60.0
    reconnect_timeout_s: float = 3.0
    max_retries: int = 3
    retry_backoff_s: float = 2.0
    reload_debounce_s: float = 0.5
    restart_delay_s: float = 1.0
    content_push_timeout_s: float = 10.0

    install_command: str = "npm install"
    start_command: str = "npm run start"
    package_manager: str = "npm"

    sandbox_backend: str = "local"
    sandbox_root: str | None = None
    preview_host: str = "127.0.0.1"
    preview_ports: tuple[int, ...] = field(default=DEFAULT_PREVIEW_PORTS)
    port_poll_interval_s: float = 0.25

    template_path: str | None = None

    @classmethod
    def from_env(cls) -> PlaygroundSettings:
        return cls(
            install_timeout_s=max(1.0, _env_float("PLAYGROUND_INSTALL_TIMEOUT_S", 120.0)),
            start_timeout_s=max(1.0, _env_float("PLAYGROUND_START_TIMEOUT_S", 60.0)),
            reconnect_timeout_s=max(0.0, _env_float("PLAYGROUND_RECONNECT_TIMEOUT_S", 3.0)),
            max_retries=max(0, _env_int("PLAYGROUND_MAX_RETRIES", 3)),
            retry_backoff_s=max(0.0, _env_float("PLAYGROUND_RETRY_BACKOFF_S", 2.0)),
            reload_debounce_s=max(0, _env_int("PLAYGROUND_RELOAD_DEBOUNCE_MS", 500)) / 1000.0,
            restart_delay_s=max(0.0, _env_float("PLAYGROUND_RESTART_DELAY_S", 1.0)),
            content_push_timeout_s=max(
                1.0, _env_float("PLAYGROUND_CONTENT_PUSH_TIMEOUT_S", 10.0)
            ),
            install_command=_env_str("PLAYGROUND_INSTALL_CMD", "npm install"),
            start_command=_env_str("PLAYGROUND_START_CMD", "npm run start"),
            package_manager=_env_str("PLAYGROUND_PACKAGE_MANAGER", "npm"),
            sandbox_backend=_env_str("PLAYGROUND_SANDBOX_BACKEND", "local").lower(),
            sandbox_root=(os.environ.get("PLAYGROUND_SANDBOX_ROOT") or "").strip() or None,
            preview_host=_env_str("PLAYGROUND_PREVIEW_HOST", "127.0.0.1"),
            preview_ports=_env_ports("PLAYGROUND_PREVIEW_PORTS", DEFAULT_PREVIEW_PORTS),
            port_poll_interval_s=max(
                0.05, _env_float("PLAYGROUND_PORT_POLL_INTERVAL_S", 0.25)
            ),
            template_path=(os.environ.get("PLAYGROUND_TEMPLATE_PATH") or "").strip() or None,
        )


def content_root() -> str:
    return _env_str("PLAYGROUND_CONTENT_ROOT", os.getcwd())


def content_keepalive_s() -> float:
    return max(1.0, _env_float("PLAYGROUND_CONTENT_KEEPALIVE_S", 30.0))

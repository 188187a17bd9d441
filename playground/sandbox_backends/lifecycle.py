"""Single-owner lifecycle for the sandbox runtime.

One manager owns at most one booted runtime. Concurrent `acquire()` callers
converge on one boot: the in-flight boot future is published before the
first suspension point, so every later caller awaits the same future
instead of booting a second runtime.

Only the manager boots or tears down. Everything else (provisioning, hot
reload) receives the runtime it returns.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from playground.errors import BootError, CapabilityError
from playground.sandbox_backends.base import SandboxCapabilities, SandboxRuntime

logger = logging.getLogger(__name__)

_CAPABILITY_MESSAGES = {
    "shared_memory": (
        "Sandbox requires shared memory support.",
        "Use an environment that provides SharedArrayBuffer (browser hosts) "
        "or POSIX shared memory (local hosts).",
    ),
    "isolation": (
        "Sandbox requires an isolated execution context.",
        "Serve the page with cross-origin isolation headers (browser hosts) "
        "or point PLAYGROUND_SANDBOX_ROOT at a writable directory (local hosts).",
    ),
}


def capability_error(caps: SandboxCapabilities) -> CapabilityError | None:
    missing = caps.missing()
    if not missing:
        return None
    message, hint = _CAPABILITY_MESSAGES[missing[0]]
    if len(missing) > 1:
        message = f"{message} Also missing: {', '.join(missing[1:])}."
    return CapabilityError(message, hint=hint)


def _classify_boot_failure(exc: Exception) -> Exception:
    text = str(exc)
    lowered = text.lower()
    if "sharedarraybuffer" in lowered or "shared memory" in lowered:
        message, hint = _CAPABILITY_MESSAGES["shared_memory"]
        return CapabilityError(message, hint=hint)
    if "cross-origin" in lowered or "security" in lowered:
        message, hint = _CAPABILITY_MESSAGES["isolation"]
        return CapabilityError(message, hint=hint)
    return BootError(f"Sandbox initialization failed: {text or type(exc).__name__}")


class SandboxLifecycleManager:
    def __init__(self, runtime_factory: Callable[[], SandboxRuntime]) -> None:
        self._runtime_factory = runtime_factory
        self._instance: SandboxRuntime | None = None
        self._boot_future: asyncio.Future[SandboxRuntime] | None = None

    @property
    def is_booted(self) -> bool:
        return self._instance is not None

    @property
    def instance(self) -> SandboxRuntime | None:
        return self._instance

    async def acquire(self) -> SandboxRuntime:
        if self._instance is not None:
            return self._instance

        if self._boot_future is not None:
            logger.debug("Joining in-flight sandbox boot")
            return await asyncio.shield(self._boot_future)

        runtime = self._runtime_factory()
        err = capability_error(runtime.probe_capabilities())
        if err is not None:
            logger.warning("Sandbox capability check failed: %s", err.message)
            raise err

        loop = asyncio.get_running_loop()
        future: asyncio.Future[SandboxRuntime] = loop.create_future()
        self._boot_future = future
        logger.info("Booting sandbox runtime")
        try:
            await runtime.boot()
        except asyncio.CancelledError:
            self._boot_future = None
            future.cancel()
            raise
        except Exception as exc:
            self._boot_future = None
            classified = _classify_boot_failure(exc)
            logger.error("Sandbox boot failed: %s", exc, exc_info=True)
            future.set_exception(classified)
            # Mark retrieved; joiners re-raise it themselves.
            future.exception()
            raise classified from exc

        self._instance = runtime
        self._boot_future = None
        future.set_result(runtime)
        logger.info("Sandbox runtime ready")
        return runtime

    async def teardown(self) -> None:
        runtime = self._instance
        self._instance = None
        self._boot_future = None
        if runtime is None:
            return
        logger.info("Tearing down sandbox runtime")
        await runtime.teardown()

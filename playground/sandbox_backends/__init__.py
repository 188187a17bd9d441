from playground.sandbox_backends.base import (
    SandboxCapabilities,
    SandboxProcess,
    SandboxRuntime,
)
from playground.sandbox_backends.lifecycle import SandboxLifecycleManager

__all__ = [
    "SandboxCapabilities",
    "SandboxLifecycleManager",
    "SandboxProcess",
    "SandboxRuntime",
]

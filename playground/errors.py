"""Error taxonomy for sandbox provisioning and hot reload.

Provisioning failures (mount, install, start) are retryable and feed the
retry policy. Capability and boot errors are raised before provisioning
starts and are never retried internally. Reload errors are soft.
"""

from __future__ import annotations


class PlaygroundError(Exception):
    kind = "playground"
    retryable = False

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "hint": self.hint}


class CapabilityError(PlaygroundError):
    kind = "capability"


class BootError(PlaygroundError):
    kind = "boot"


class ProvisioningError(PlaygroundError):
    kind = "provisioning"
    retryable = True

    def __init__(
        self, message: str, *, hint: str | None = None, timed_out: bool = False
    ) -> None:
        super().__init__(message, hint=hint)
        self.timed_out = timed_out

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["timed_out"] = self.timed_out
        return out


class MountError(ProvisioningError):
    kind = "mount"


class InstallError(ProvisioningError):
    kind = "install"


class StartError(ProvisioningError):
    kind = "start"


class ReloadError(PlaygroundError):
    kind = "reload"


class FileWriteError(PlaygroundError):
    kind = "write"


class TemplateStructureError(PlaygroundError, ValueError):
    kind = "template"

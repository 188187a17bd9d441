from __future__ import annotations

import posixpath
from dataclasses import dataclass

DENY_WRITE_PREFIXES = ("node_modules/", ".git/")


@dataclass(frozen=True)
class Policy:
    deny_write_prefixes: tuple[str, ...]


DEFAULT_POLICY = Policy(deny_write_prefixes=DENY_WRITE_PREFIXES)


def normalize_sandbox_path(path: str) -> str:
    """Normalize a sandbox path like '/src/App.jsx' to 'src/App.jsx'.

    Sandbox file systems are addressed relative to the project root.
    """
    raw = (path or "").strip().replace("\\", "/")
    if not raw:
        raise ValueError("empty path")
    if "\x00" in raw:
        raise ValueError("invalid path")

    parts = raw.split("/")
    # normpath collapses "..", so reject it on the raw segments.
    if ".." in parts:
        raise ValueError("path traversal not allowed")

    norm = posixpath.normpath("/" + raw.lstrip("/")).lstrip("/")
    if not norm or norm == ".":
        raise ValueError("invalid path")
    return norm


def parent_dir(path: str) -> str:
    return posixpath.dirname(path)


def is_denied_path(path: str, *, policy: Policy = DEFAULT_POLICY) -> bool:
    normalized = path.rstrip("/") + "/"
    return any(normalized.startswith(p) for p in policy.deny_write_prefixes)


def require_write_allowed(path: str, *, policy: Policy = DEFAULT_POLICY) -> str:
    p = normalize_sandbox_path(path)
    if is_denied_path(p, policy=policy):
        raise PermissionError(f"writes not allowed for '{p}'")
    return p

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

TerminalView = Callable[[str], None]


class TerminalSink:
    """Write-only channel into the attached terminal views.

    Text is forwarded verbatim (control sequences included) to every attached
    view. Writing while no view is attached is a no-op, so producers never
    need to know whether a terminal is mounted.
    """

    def __init__(self) -> None:
        self._views: list[TerminalView] = []

    @property
    def attached(self) -> bool:
        return bool(self._views)

    def attach(self, view: TerminalView) -> None:
        self._views.append(view)

    def detach(self, view: TerminalView | None = None) -> None:
        if view is None:
            self._views.clear()
            return
        self._views = [v for v in self._views if v != view]

    def write(self, text: str) -> None:
        if not text:
            return
        for view in list(self._views):
            try:
                view(text)
            except Exception:
                logger.warning("Terminal view rejected output; detaching", exc_info=True)
                self.detach(view)

    def line(self, text: str) -> None:
        self.write(f"{text}\r\n")

    def tagged(self, tag: str) -> TaggedTerminal:
        return TaggedTerminal(self, tag)


class TaggedTerminal:
    """Prefixes every line written through it with `[tag] `."""

    def __init__(self, sink: TerminalSink, tag: str) -> None:
        self._sink = sink
        self._prefix = f"[{tag}] "
        self._at_line_start = True

    def write(self, text: str) -> None:
        if not text:
            return
        out: list[str] = []
        for piece in text.splitlines(keepends=True):
            if self._at_line_start:
                out.append(self._prefix)
            out.append(piece)
            self._at_line_start = piece.endswith("\n")
        self._sink.write("".join(out))

    def line(self, text: str) -> None:
        self.write(f"{text}\r\n")

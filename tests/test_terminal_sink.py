from __future__ import annotations

from playground.terminal import TerminalSink


def test_write_without_view_is_noop() -> None:
    sink = TerminalSink()
    sink.write("lost\r\n")
    assert sink.attached is False


def test_write_forwards_text_verbatim() -> None:
    sink = TerminalSink()
    seen: list[str] = []
    sink.attach(seen.append)

    sink.write("\x1b[32mok\x1b[0m")
    sink.line("done")

    assert seen == ["\x1b[32mok\x1b[0m", "done\r\n"]


def test_detach_only_removes_matching_view() -> None:
    sink = TerminalSink()
    old: list[str] = []
    new: list[str] = []
    sink.attach(old.append)
    sink.attach(new.append)

    sink.detach(old.append)
    sink.write("x")

    assert new == ["x"]
    assert old == []


def test_failing_view_is_detached_without_raising() -> None:
    sink = TerminalSink()

    def _broken(text: str) -> None:
        raise RuntimeError("gone")

    sink.attach(_broken)
    sink.write("x")

    assert sink.attached is False


def test_tagged_prefixes_each_line_across_chunks() -> None:
    sink = TerminalSink()
    seen: list[str] = []
    sink.attach(seen.append)
    out = sink.tagged("install")

    out.write("added 1\nadded")
    out.write(" 2\n")
    out.line("done")

    assert "".join(seen) == "[install] added 1\n[install] added 2\n[install] done\r\n"


def test_every_attached_view_receives_output() -> None:
    sink = TerminalSink()
    first: list[str] = []
    second: list[str] = []
    sink.attach(first.append)
    sink.attach(second.append)

    sink.line("one")
    sink.detach(first.append)
    sink.line("two")

    assert first == ["one\r\n"]
    assert second == ["one\r\n", "two\r\n"]
    assert sink.attached is True


def test_failing_view_does_not_starve_the_others() -> None:
    sink = TerminalSink()
    seen: list[str] = []

    def _broken(text: str) -> None:
        raise RuntimeError("gone")

    sink.attach(_broken)
    sink.attach(seen.append)
    sink.write("a")
    sink.write("b")

    assert seen == ["a", "b"]
    assert sink.attached is True

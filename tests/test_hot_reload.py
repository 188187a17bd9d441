from __future__ import annotations

import asyncio
import json
import time

import pytest

from playground.config import PlaygroundSettings
from playground.errors import FileWriteError
from playground.hot_reload import (
    CONTENT_PUSH,
    GENERIC_RESTART,
    REACT_RESTART,
    VUE_RESTART,
    HotReloadCoordinator,
    classify_strategy,
    parse_manifest,
    select_strategies,
)
from playground.provisioning import Phase, ProvisioningStateMachine
from playground.templates.tree import TemplateFolder

PREVIEW_URL = "http://127.0.0.1:3000"
EXPRESS_MANIFEST = json.dumps({"dependencies": {"express": "^4.18.2"}})


def _settings(**overrides) -> PlaygroundSettings:
    values = dict(reload_debounce_s=0.05, restart_delay_s=0.0, start_timeout_s=1.0)
    values.update(overrides)
    return PlaygroundSettings(**values)


def _coordinator(rt, *, http=None, settings=None, ready=True):
    settings = settings or _settings()
    machine = ProvisioningStateMachine(rt, TemplateFolder("root"), settings=settings)
    if ready:
        machine.state.enter(Phase.READY)
        machine.update_preview_url(PREVIEW_URL)
    return HotReloadCoordinator(rt, machine, settings=settings, http=http)


def test_select_strategies_by_dependency() -> None:
    assert select_strategies({"dependencies": {"express": "4"}}) == [CONTENT_PUSH, GENERIC_RESTART]
    assert select_strategies({"dependencies": {"express": "4", "react": "18"}}) == [
        CONTENT_PUSH,
        REACT_RESTART,
    ]
    assert classify_strategy({"dependencies": {"react-dom": "18"}}) == REACT_RESTART
    assert classify_strategy({"dependencies": {"vue": "3"}}) == VUE_RESTART
    assert classify_strategy({}) == GENERIC_RESTART
    assert VUE_RESTART.script == "serve"


def test_parse_manifest_tolerates_garbage() -> None:
    assert parse_manifest(None) == {}
    assert parse_manifest("{nope") == {}
    assert parse_manifest("[]") == {}
    assert parse_manifest('{"name": "x"}') == {"name": "x"}


def test_burst_of_writes_triggers_one_reload_after_quiet_period(make_runtime, make_http) -> None:
    rt = make_runtime(files={"package.json": EXPRESS_MANIFEST})
    http = make_http()
    fired_at: list[float] = []
    original_post = http.post

    def _timed_post(url, json=None, timeout=None):
        fired_at.append(time.monotonic())
        return original_post(url, json=json, timeout=timeout)

    http.post = _timed_post

    async def _run():
        c = _coordinator(rt, http=http)
        await c.notify_write("/pages/index.html", "<h1>1</h1>")
        await asyncio.sleep(0.02)
        await c.notify_write("/pages/index.html", "<h1>2</h1>")
        await asyncio.sleep(0.02)
        await c.notify_write("/static/style.css", "h1{color:red}")
        last_write = time.monotonic()
        await asyncio.sleep(0.3)
        await c.close()
        return c, last_write

    c, last_write = asyncio.run(_run())

    assert len(http.posts) == 1
    assert fired_at[0] - last_write >= 0.045
    url, body = http.posts[0]
    assert url == f"{PREVIEW_URL}/api/content"
    assert body == {"html": "<h1>2</h1>", "css": "h1{color:red}"}
    assert c.reload_count == 1
    assert rt.dirs >= {"pages", "static"}


def test_write_before_ready_does_not_schedule_reload(make_runtime, make_http) -> None:
    rt = make_runtime()
    http = make_http()

    async def _run():
        c = _coordinator(rt, http=http, ready=False)
        rel = await c.notify_write("src/App.jsx", "x")
        scheduled = c.reload_scheduled
        await asyncio.sleep(0.1)
        return c, rel, scheduled

    c, rel, scheduled = asyncio.run(_run())

    assert rel == "src/App.jsx"
    assert rt.files["src/App.jsx"] == "x"
    assert scheduled is False
    assert c.reload_count == 0
    assert c.last_write_ms is not None


def test_failed_content_push_falls_through_to_restart(make_runtime, make_http) -> None:
    manifest = json.dumps({"dependencies": {"express": "4", "react": "18"}})
    rt = make_runtime(files={"package.json": manifest})
    rt.ready_url = "http://127.0.0.1:3010"
    http = make_http(status_code=500)

    async def _run():
        c = _coordinator(rt, http=http)
        ok = await c.reload_now()
        return c, ok

    c, ok = asyncio.run(_run())

    assert ok is True
    assert len(http.posts) == 1
    assert rt.spawned == ["npm run start"]
    assert c.machine.preview_url == "http://127.0.0.1:3010"
    assert c.reload_failures == 0


def test_vue_project_restarts_with_serve_script(make_runtime) -> None:
    rt = make_runtime(files={"package.json": json.dumps({"dependencies": {"vue": "3"}})})

    async def _run():
        c = _coordinator(rt)
        return await c.reload_now()

    assert asyncio.run(_run()) is True
    assert rt.spawned == ["npm run serve"]


def test_restart_stops_previous_server(make_runtime, make_process) -> None:
    rt = make_runtime()
    old = make_process(hang=True)

    async def _run():
        c = _coordinator(rt)
        c.machine.server.replace(old)
        return await c.reload_now()

    assert asyncio.run(_run()) is True
    assert old.killed is True


def test_reload_failure_is_soft(make_runtime) -> None:
    rt = make_runtime()
    rt.emit_ready = False

    async def _run():
        c = _coordinator(rt, settings=_settings(start_timeout_s=0.05))
        ok = await c.reload_now()
        return c, ok

    c, ok = asyncio.run(_run())

    assert ok is False
    assert c.reload_failures == 1
    assert "timed out" in c.last_reload_error
    assert c.machine.state.ready is True
    assert c.machine.preview_url == PREVIEW_URL


def test_write_during_reload_queues_exactly_one_more(make_runtime, make_http) -> None:
    rt = make_runtime(files={"package.json": EXPRESS_MANIFEST})
    http = make_http()
    original_post = http.post

    def _slow_post(url, json=None, timeout=None):
        time.sleep(0.1)
        return original_post(url, json=json, timeout=timeout)

    http.post = _slow_post

    async def _run():
        c = _coordinator(rt, http=http, settings=_settings(reload_debounce_s=0.02))
        await c.notify_write("pages/index.html", "a")
        await asyncio.sleep(0.05)
        assert c.reloading
        await c.notify_write("pages/index.html", "b")
        await asyncio.sleep(0.03)
        await c.notify_write("pages/index.html", "c")
        await asyncio.sleep(0.5)
        await c.close()
        return c

    c = asyncio.run(_run())

    assert len(http.posts) == 2
    assert http.posts[-1][1]["html"] == "c"


def test_write_failure_raises_file_write_error(make_runtime) -> None:
    rt = make_runtime()
    rt.write_error = OSError("disk full")

    async def _run():
        c = _coordinator(rt)
        await c.notify_write("src/a.js", "x")

    with pytest.raises(FileWriteError):
        asyncio.run(_run())


def test_protected_and_invalid_paths_are_rejected(make_runtime) -> None:
    rt = make_runtime()

    async def _run(path):
        c = _coordinator(rt)
        await c.notify_write(path, "x")

    with pytest.raises(PermissionError):
        asyncio.run(_run("node_modules/react/index.js"))
    with pytest.raises(ValueError):
        asyncio.run(_run("../outside.txt"))
    assert rt.files == {}

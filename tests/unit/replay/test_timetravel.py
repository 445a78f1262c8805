"""
Tests for the time-travel service.
"""

import json

import pytest

from rce_engine.exceptions import FrameNotFoundError, InvalidLocatorError
from rce_engine.interfaces.replay import IReplayer
from rce_engine.replay import TimeTravelService
from rce_engine.session import RunMeta, RunPaths
from rce_engine.timeline import IndexLocator, TimelineStore


class FakeReplayer(IReplayer):
    """Records what it was asked to render."""

    def __init__(self):
        self.calls = []
        self.closed = False

    async def render_screenshot(self, events, out_path, viewport=None):
        self.calls.append(("shot", events, viewport))
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(b"\x89PNG")
        return out_path

    async def render_html(self, events, viewport=None):
        self.calls.append(("html", events, viewport))
        return f"<html><body>{len(events)} events</body></html>"

    async def close(self):
        self.closed = True


def _event(ts, type_=3):
    return {"type": type_, "timestamp": ts, "data": {}}


@pytest.fixture
def run(tmp_path):
    """A finished run with two tabs and a custom marker."""
    paths = RunPaths(tmp_path / "run").create()
    RunMeta(
        run_id=paths.run_id,
        run_dir=str(paths.run_dir),
        started_at=900,
        viewport={"width": 1024, "height": 700},
    ).save(paths.meta_file)

    store = TimelineStore.open(paths, durable=False, started_at=900)
    store.tabs.register(0, "http://localhost:3000/")
    store.record(0, _event(1000, type_=4))
    store.record(0, _event(1000, type_=2))
    store.record(0, {"type": 5, "timestamp": 1100, "data": {"tag": "marker"}})
    store.tabs.register(1, "http://localhost:3000/popup")
    store.record(1, _event(1200, type_=2))
    store.record(0, _event(1300))
    store.close()
    return paths


@pytest.fixture
def replayer():
    return FakeReplayer()


@pytest.fixture
def service(run, replayer):
    return TimeTravelService(run, replayer=replayer)


class TestQueries:
    """Test frames, tabs and resolution."""

    def test_frames(self, service):
        assert [f.key for f in service.frames()] == ["1000#0", "1000#1", "1200#0", "1300#0"]
        assert [f.i for f in service.frames(tab=0)] == [0, 1, 3]

    def test_tabs(self, service):
        tabs = service.tabs()
        assert [(t.tab_id, t.url) for t in tabs] == [
            (0, "http://localhost:3000/"),
            (1, "http://localhost:3000/popup"),
        ]

    def test_resolve_text(self, service):
        resolution = service.resolve("+250")
        assert resolution.frame.key == "1200#0"
        assert resolution.tab_id == 1

    def test_resolve_in_tab(self, service):
        resolution = service.resolve("+250", tab=0)
        assert resolution.frame.key == "1000#1"

    def test_resolve_locator(self, service):
        assert service.resolve(IndexLocator(3)).frame.ts == 1300

    def test_resolve_invalid(self, service):
        with pytest.raises(InvalidLocatorError):
            service.resolve("yesterday-ish")

    def test_resolve_before_first(self, service):
        with pytest.raises(FrameNotFoundError):
            service.resolve("999")

    def test_rebuild_matches_file(self, run, replayer):
        rebuilt = TimeTravelService(run, replayer=replayer, rebuild=True)
        loaded = TimeTravelService(run, replayer=replayer)
        assert rebuilt.frames() == loaded.frames()

    def test_missing_index_is_derived(self, run, replayer):
        run.frames_file.unlink()
        service = TimeTravelService(run, replayer=replayer)
        assert len(service.frames()) == 4
        assert not run.frames_file.exists()

    def test_viewport_from_meta(self, service):
        assert service.meta.viewport == {"width": 1024, "height": 700}


class TestRendering:
    """Test shot and html."""

    @pytest.mark.asyncio
    async def test_shot_uses_tab_prefix(self, service, replayer, run):
        path = await service.shot("1000#1")

        kind, events, viewport = replayer.calls[0]
        assert kind == "shot"
        assert [e["timestamp"] for e in events] == [1000, 1000]
        assert viewport == {"width": 1024, "height": 700}
        assert path.parent == run.screenshots_dir
        assert path.name.startswith("shot_")
        assert path.exists()

    @pytest.mark.asyncio
    async def test_prefix_keeps_custom_events_of_tab(self, service, replayer):
        await service.shot(IndexLocator(3))
        _, events, _ = replayer.calls[0]
        assert [e["type"] for e in events] == [4, 2, 5, 3]

    @pytest.mark.asyncio
    async def test_shot_custom_path(self, service, tmp_path):
        out = tmp_path / "out" / "frame.png"
        assert await service.shot("+0", out=out) == out

    @pytest.mark.asyncio
    async def test_html(self, service, run):
        result = await service.html("1200#0")

        assert result["html"] == "<html><body>1 events</body></html>"
        assert result["bytes"] == len(result["html"])
        path = run.snapshots_dir / f"frame_2_{result['path'].rsplit('_', 1)[1]}"
        assert result["path"] == str(path)
        assert path.read_text() == result["html"]

    @pytest.mark.asyncio
    async def test_read_only(self, service, run):
        before = run.events_file.read_bytes(), run.frames_file.read_bytes()
        await service.html("+0")
        await service.shot("+0")
        assert (run.events_file.read_bytes(), run.frames_file.read_bytes()) == before

    @pytest.mark.asyncio
    async def test_close(self, service, replayer):
        await service.close()
        assert replayer.closed


class TestIndexFiles:
    """Test what the recorder wrote for the service to read."""

    def test_frames_file(self, run):
        lines = [json.loads(line) for line in run.frames_file.read_text().splitlines()]
        assert [line["i"] for line in lines] == [0, 1, 2, 3]

"""
Tests for the session lifecycle manager.
"""

import asyncio
import os
import socket
import subprocess

import pytest

from rce_engine.exceptions import AlreadyInProgressError, IOFailureError, NoActiveSessionError
from rce_engine.session import (
    LifecycleState,
    RunMeta,
    SessionLifecycleManager,
    TeardownStep,
    read_pid_file,
    write_pid_file,
)


@pytest.fixture
def manager(workspace, settings):
    return SessionLifecycleManager(workspace, settings.lifecycle)


class TestStart:
    """Test starting a run."""

    @pytest.mark.asyncio
    async def test_start_creates_run(self, manager, workspace):
        meta = await manager.start(url="http://localhost:3000", viewport={"width": 800, "height": 600}, headless=True)

        assert manager.state == LifecycleState.ACTIVE
        run = workspace.current_run()
        assert run is not None
        assert run.run_id == meta.run_id
        assert read_pid_file(run.pid_file("main")) == os.getpid()

        saved = RunMeta.load(run.meta_file)
        assert saved.url == "http://localhost:3000"
        assert saved.viewport == {"width": 800, "height": 600}
        assert saved.active

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, manager):
        await manager.start()
        with pytest.raises(AlreadyInProgressError) as exc_info:
            await manager.start()
        assert exc_info.value.code == "already_in_progress"

    @pytest.mark.asyncio
    async def test_stale_lock_is_cleared(self, workspace, settings):
        previous = workspace.new_run("2024-01-01_00-00-00-000")
        RunMeta(run_id=previous.run_id, run_dir=str(previous.run_dir)).save(previous.meta_file)
        workspace.current.set(previous.run_dir)
        orphan = subprocess.Popen(["sleep", "30"])
        write_pid_file(previous.pid_file("browser"), orphan.pid)
        workspace.socket_path.write_text("")

        try:
            manager = SessionLifecycleManager(workspace, settings.lifecycle)
            meta = await manager.start()
        finally:
            orphan.kill()
            orphan.wait()

        assert meta.run_id != previous.run_id
        assert not previous.pid_file("browser").exists()
        assert not workspace.socket_path.exists()
        assert RunMeta.load(previous.meta_file).active is False
        assert workspace.current_run().run_id == meta.run_id

    @pytest.mark.asyncio
    async def test_failed_start_resets_state(self, manager, workspace):
        workspace.ensure()
        # A file where the data directory should be
        workspace.data_dir.rmdir()
        workspace.data_dir.write_text("")

        with pytest.raises(IOFailureError):
            await manager.start()
        assert manager.state == LifecycleState.INACTIVE


class TestStop:
    """Test stopping a run."""

    @pytest.mark.asyncio
    async def test_nothing_to_stop(self, manager):
        with pytest.raises(NoActiveSessionError):
            await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_runs_extra_steps_first(self, manager):
        calls = []
        meta = await manager.start()
        manager.add_teardown_step(TeardownStep("close browser", lambda: calls.append("close browser")))

        report = await manager.stop()

        assert calls == ["close browser"]
        assert [o.name for o in report.outcomes] == [
            "close browser",
            "terminate main",
            "terminate browser",
            "terminate server",
            "remove control endpoint",
            "mark run inactive",
        ]
        assert report.ok
        assert report.get("terminate main").result == "self"
        assert report.get("terminate browser").result == "no_pid"
        assert manager.state == LifecycleState.INACTIVE

        run = manager.workspace.current_run()
        assert run.run_id == meta.run_id
        assert not run.pid_file("main").exists()
        stopped = RunMeta.load(run.meta_file)
        assert stopped.active is False
        assert stopped.stopped_at is not None

    @pytest.mark.asyncio
    async def test_stop_from_another_manager(self, workspace, settings):
        owner = SessionLifecycleManager(workspace, settings.lifecycle)
        owner.add_teardown_step(TeardownStep("owner only", lambda: None))
        await owner.start()

        report = await SessionLifecycleManager(workspace, settings.lifecycle).stop()

        assert report.get("owner only") is None
        assert report.get("mark run inactive").ok

    @pytest.mark.asyncio
    async def test_concurrent_stop_is_skipped(self, manager):
        await manager.start()
        release = asyncio.Event()

        async def slow_step():
            await release.wait()

        manager.add_teardown_step(TeardownStep("slow", slow_step))
        first = asyncio.create_task(manager.stop())
        await asyncio.sleep(0.01)

        second = await manager.stop()
        release.set()
        report = await first

        assert second.skipped
        assert second.outcomes == []
        assert not report.skipped

    @pytest.mark.asyncio
    async def test_live_endpoint_is_left_alone(self, manager, workspace):
        await manager.start()
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(str(workspace.socket_path))
        server.listen(1)
        try:
            report = await manager.stop()
            assert report.get("remove control endpoint").result is False
            assert workspace.socket_path.exists()
        finally:
            server.close()


class TestRestart:
    """Test restarting."""

    @pytest.mark.asyncio
    async def test_restart_without_run(self, manager):
        meta = await manager.restart(url="http://localhost:3000")
        assert manager.state == LifecycleState.ACTIVE
        assert meta.url == "http://localhost:3000"

    @pytest.mark.asyncio
    async def test_restart_replaces_run(self, manager, workspace):
        first = await manager.start()
        await asyncio.sleep(0.002)
        second = await manager.restart()

        assert second.run_id != first.run_id
        assert workspace.current_run().run_id == second.run_id
        assert RunMeta.load(workspace.data_dir / first.run_id / "meta" / "recorder.meta.json").active is False


class TestStatus:
    """Test status reporting."""

    def test_no_run(self, manager):
        assert manager.status() == {"running": False, "run": None}

    @pytest.mark.asyncio
    async def test_running(self, manager):
        meta = await manager.start(url="http://localhost:3000")
        status = manager.status()

        assert status["running"] is True
        assert status["run"] == meta.run_id
        assert status["processes"]["main"] == {"pid": os.getpid(), "alive": True}
        assert status["meta"]["url"] == "http://localhost:3000"
        assert status["endpoint"] is False

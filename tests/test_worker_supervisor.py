"""
Tests for the classifier worker supervisor, driven by a scripted fake worker.
"""

import asyncio
import logging
import sys
from pathlib import Path

import pytest

from smartplant.core.exceptions import WorkerUnavailable
from smartplant.models.enums import WorkerState
from smartplant.services.worker_supervisor import WorkerSupervisor

FAKE_WORKER = Path(__file__).parent / "fake_worker.py"


def make_supervisor(mode="ok", timeout=10.0, **env):
    return WorkerSupervisor(
        [sys.executable, str(FAKE_WORKER)],
        timeout=timeout,
        env={"FAKE_WORKER_MODE": mode, **env},
    )


class TestRequestResponse:
    """Test the line-delimited JSON exchange."""

    @pytest.mark.asyncio
    async def test_call_returns_parsed_response(self):
        supervisor = make_supervisor()
        try:
            response = await supervisor.call({"image": "/tmp/a.jpg", "topk": 5})
        finally:
            await supervisor.stop()

        assert response["species_name"] == "Rafflesia arnoldii"
        assert response["echo"] == "/tmp/a.jpg"
        assert len(response["topk"]) == 2

    @pytest.mark.asyncio
    async def test_spawns_lazily_once(self):
        supervisor = make_supervisor()
        assert supervisor.state is WorkerState.NOT_STARTED
        try:
            first = await supervisor.call({"image": "/tmp/a.jpg", "topk": 1})
            second = await supervisor.call({"image": "/tmp/b.jpg", "topk": 1})
            assert supervisor.state is WorkerState.RUNNING
        finally:
            await supervisor.stop()

        assert first["pid"] == second["pid"]
        assert supervisor.spawn_count == 1
        assert supervisor.state is WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_response_split_across_reads(self):
        supervisor = make_supervisor("chunked")
        try:
            response = await supervisor.call({"image": "/tmp/split.jpg", "topk": 2})
        finally:
            await supervisor.stop()

        assert response["echo"] == "/tmp/split.jpg"

    @pytest.mark.asyncio
    async def test_concurrent_calls_are_serialized(self):
        """Each caller gets the response to its own request."""
        supervisor = make_supervisor("chunked")
        images = [f"/tmp/{i}.jpg" for i in range(5)]
        try:
            responses = await asyncio.gather(
                *(supervisor.call({"image": image, "topk": 1}) for image in images)
            )
        finally:
            await supervisor.stop()

        assert [r["echo"] for r in responses] == images
        assert supervisor.spawn_count == 1

    @pytest.mark.asyncio
    async def test_worker_stderr_is_logged(self, caplog):
        supervisor = make_supervisor("chatty")
        with caplog.at_level(logging.WARNING, logger="smartplant.services.worker_supervisor"):
            try:
                await supervisor.call({"image": "/tmp/noisy.jpg", "topk": 1})
                # stderr is relayed by a background task
                for _ in range(50):
                    if any("classifying /tmp/noisy.jpg" in r.message for r in caplog.records):
                        break
                    await asyncio.sleep(0.02)
            finally:
                await supervisor.stop()

        assert any("[pyworker] classifying /tmp/noisy.jpg" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_long_stderr_lines_keep_draining(self, caplog):
        """A stderr line larger than the pipe buffer neither kills the relay nor blocks the worker."""
        supervisor = make_supervisor("loud", timeout=5.0)
        with caplog.at_level(logging.WARNING, logger="smartplant.services.worker_supervisor"):
            try:
                first = await asyncio.wait_for(supervisor.call({"image": "/tmp/a.jpg", "topk": 1}), 15)
                second = await asyncio.wait_for(supervisor.call({"image": "/tmp/b.jpg", "topk": 1}), 15)
                third = await asyncio.wait_for(supervisor.call({"image": "/tmp/c.jpg", "topk": 1}), 15)
            finally:
                await supervisor.stop()

        assert [r["echo"] for r in (first, second, third)] == ["/tmp/a.jpg", "/tmp/b.jpg", "/tmp/c.jpg"]
        assert supervisor.spawn_count == 1
        assert any(r.message.startswith("[pyworker] WWWW") for r in caplog.records)


class TestFailures:
    """Test crash, timeout and protocol failures."""

    @pytest.mark.asyncio
    async def test_crash_raises_and_next_call_respawns(self, tmp_path):
        supervisor = make_supervisor("crash_once", FAKE_WORKER_MARKER=str(tmp_path / "crashed"))
        try:
            with pytest.raises(WorkerUnavailable):
                await supervisor.call({"image": "/tmp/a.jpg", "topk": 1})
            assert supervisor.state is WorkerState.CRASHED

            response = await supervisor.call({"image": "/tmp/b.jpg", "topk": 1})
        finally:
            await supervisor.stop()

        assert response["echo"] == "/tmp/b.jpg"
        assert supervisor.spawn_count == 2

    @pytest.mark.asyncio
    async def test_timeout_kills_worker(self):
        supervisor = make_supervisor("hang", timeout=0.5)
        try:
            with pytest.raises(WorkerUnavailable) as exc_info:
                await supervisor.call({"image": "/tmp/slow.jpg", "topk": 1})
            assert supervisor.state is WorkerState.CRASHED
            assert not supervisor.is_running
        finally:
            await supervisor.stop()

        assert "did not respond" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_malformed_json_is_worker_unavailable(self):
        supervisor = make_supervisor("garbage")
        try:
            with pytest.raises(WorkerUnavailable):
                await supervisor.call({"image": "/tmp/a.jpg", "topk": 1})
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path):
        supervisor = WorkerSupervisor([str(tmp_path / "no-such-binary")], timeout=1.0)
        with pytest.raises(WorkerUnavailable):
            await supervisor.call({"image": "/tmp/a.jpg", "topk": 1})
        assert supervisor.state is WorkerState.CRASHED

    @pytest.mark.asyncio
    async def test_call_after_stop_is_refused(self):
        supervisor = make_supervisor()
        await supervisor.start()
        await supervisor.stop()

        with pytest.raises(WorkerUnavailable):
            await supervisor.call({"image": "/tmp/a.jpg", "topk": 1})

"""Tests for the per-slot process supervisor against a real child process."""

import asyncio
import sys
from unittest.mock import patch

import pytest

from src.rpc_bridge.errors import LaunchFailedError, NotRunningError, UnknownSlotError
from src.rpc_bridge.models import BridgeConfig, OutcomeKind, SlotSpec, SlotState
from src.rpc_bridge.supervisor import ProcessSupervisor


async def _wait_stopped(slot, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while slot.state != SlotState.STOPPED and loop.time() < deadline:
        await asyncio.sleep(0.02)


class TestProcessSupervisor:
    """Test launching, stopping and relaunching child processes."""

    @pytest.mark.asyncio
    async def test_ensure_running_is_idempotent(self, make_config):
        supervisor = ProcessSupervisor(make_config(echo="echo"))
        try:
            await supervisor.ensure_running("echo")
            pid = supervisor.get("echo").process.pid

            await supervisor.ensure_running("echo")

            slot = supervisor.get("echo")
            assert slot.process.pid == pid
            assert slot.launches == 1
            assert slot.state == SlotState.RUNNING
            assert supervisor.is_running("echo")
        finally:
            await supervisor.shutdown_all()

    @pytest.mark.asyncio
    async def test_concurrent_starts_launch_once(self, make_config):
        supervisor = ProcessSupervisor(make_config(echo="echo"))
        try:
            await asyncio.gather(*(supervisor.ensure_running("echo") for _ in range(5)))

            assert supervisor.get("echo").launches == 1
        finally:
            await supervisor.shutdown_all()

    @pytest.mark.asyncio
    async def test_unknown_slot(self, make_config):
        supervisor = ProcessSupervisor(make_config(echo="echo"))

        with pytest.raises(UnknownSlotError):
            await supervisor.ensure_running("nope")
        assert supervisor.is_running("nope") is False

    @pytest.mark.asyncio
    async def test_launch_failure(self, tmp_path):
        config = BridgeConfig(
            slots={"broken": SlotSpec(command=str(tmp_path / "no-such-binary"))},
            autostart=False,
        )
        supervisor = ProcessSupervisor(config)

        with pytest.raises(LaunchFailedError):
            await supervisor.ensure_running("broken")

        slot = supervisor.get("broken")
        assert slot.state == SlotState.STOPPED
        assert slot.process is None

    @pytest.mark.asyncio
    async def test_start_all_tolerates_failures(self, fake_backend, tmp_path):
        config = BridgeConfig(
            slots={
                "good": fake_backend("echo"),
                "broken": SlotSpec(command=str(tmp_path / "no-such-binary")),
            },
            autostart=False,
        )
        supervisor = ProcessSupervisor(config)
        try:
            await supervisor.start_all()

            assert supervisor.is_running("good")
            assert not supervisor.is_running("broken")
        finally:
            await supervisor.shutdown_all()

    @pytest.mark.asyncio
    async def test_stop(self, make_config):
        supervisor = ProcessSupervisor(make_config(echo="echo"))
        await supervisor.ensure_running("echo")
        process = supervisor.get("echo").process

        await supervisor.stop("echo")

        slot = supervisor.get("echo")
        assert process.returncode is not None
        assert slot.process is None
        assert slot.state == SlotState.STOPPED

    @pytest.mark.asyncio
    async def test_shutdown_all_without_processes(self, make_config):
        supervisor = ProcessSupervisor(make_config(a="echo", b="echo"))

        await supervisor.shutdown_all()

        assert not supervisor.is_running("a")

    @pytest.mark.asyncio
    async def test_shutdown_all_stops_every_slot(self, make_config):
        supervisor = ProcessSupervisor(make_config(a="echo", b="silent"))
        await supervisor.start_all()
        processes = [supervisor.get(key).process for key in ("a", "b")]

        await supervisor.shutdown_all()

        assert all(process.returncode is not None for process in processes)
        assert not supervisor.is_running("a")
        assert not supervisor.is_running("b")

    @pytest.mark.asyncio
    async def test_write_without_process(self, make_config):
        supervisor = ProcessSupervisor(make_config(echo="echo"))

        with pytest.raises(NotRunningError):
            await supervisor.get("echo").write({"id": 1})

    @pytest.mark.asyncio
    async def test_exit_clears_handle_and_relaunches(self, make_config):
        """After the child exits, the next start launches a fresh process."""
        supervisor = ProcessSupervisor(make_config(echo="echo"))
        try:
            await supervisor.ensure_running("echo")
            slot = supervisor.get("echo")
            first_pid = slot.process.pid

            await slot.write({"jsonrpc": "2.0", "method": "exit", "params": {"code": 4}})
            await _wait_stopped(slot)

            assert slot.process is None
            assert slot.last_exit_code == 4
            assert not supervisor.is_running("echo")

            await supervisor.ensure_running("echo")
            assert slot.process.pid != first_pid
            assert slot.launches == 2
        finally:
            await supervisor.shutdown_all()

    @pytest.mark.asyncio
    async def test_environment_and_cwd(self, tmp_path):
        script = tmp_path / "report.py"
        script.write_text(
            "import json, os, sys\n"
            "sys.stdin.readline()\n"
            "print(json.dumps({'cwd': os.getcwd(), 'token': os.environ.get('SLOT_TOKEN')}), flush=True)\n"
        )
        config = BridgeConfig(
            slots={
                "report": SlotSpec(
                    command=sys.executable,
                    args=[str(script)],
                    cwd=str(tmp_path),
                    env={"SLOT_TOKEN": "secret"},
                )
            },
            autostart=False,
        )
        supervisor = ProcessSupervisor(config)
        try:
            slot = supervisor.get("report")
            await slot.ensure_running()
            loop = asyncio.get_running_loop()
            pending = slot.correlation.register(None, loop.time() + 5)
            await slot.write({"method": "report"})

            outcome = await slot.correlation.wait(pending)

            assert outcome.value["token"] == "secret"
            assert outcome.value["cwd"] == str(tmp_path.resolve())
        finally:
            await supervisor.shutdown_all()

    @pytest.mark.asyncio
    async def test_stats(self, make_config):
        supervisor = ProcessSupervisor(make_config(echo="echo", idle="echo"))
        try:
            await supervisor.ensure_running("echo")

            stats = {s.slot: s for s in supervisor.get_stats()}

            assert stats["echo"].state == "running"
            assert stats["echo"].process_id is not None
            assert stats["echo"].launches == 1
            assert stats["idle"].state == "stopped"
            assert stats["idle"].process_id is None
        finally:
            await supervisor.shutdown_all()


class TestOutputPumps:
    """Test the stdout and stderr readers of a live slot."""

    @pytest.mark.asyncio
    async def test_routing_failure_keeps_reading(self, make_config):
        """An error while routing one value does not stop the stdout reader."""
        supervisor = ProcessSupervisor(make_config(echo="echo"))
        try:
            await supervisor.ensure_running("echo")
            slot = supervisor.get("echo")
            dispatch = slot.correlation.dispatch
            seen = []

            def flaky_dispatch(value):
                seen.append(value)
                if len(seen) == 1:
                    raise RuntimeError("routing failed")
                return dispatch(value)

            with patch.object(slot.correlation, "dispatch", side_effect=flaky_dispatch):
                loop = asyncio.get_running_loop()
                pending = slot.correlation.register(1, loop.time() + 5)
                await slot.write({"jsonrpc": "2.0", "id": 1, "method": "ping"})
                await slot.write({"jsonrpc": "2.0", "id": 1, "method": "ping"})

                outcome = await slot.correlation.wait(pending)

            assert outcome.kind == OutcomeKind.DELIVERED
            assert len(seen) == 2
            assert slot.is_running
        finally:
            await supervisor.shutdown_all()

    @pytest.mark.asyncio
    async def test_diagnostic_line_logged_whole(self, make_config):
        """A diagnostic line written in pieces is logged as one line."""
        supervisor = ProcessSupervisor(make_config(echo="echo"))
        try:
            with patch("src.rpc_bridge.supervisor.logger") as mock_logger:
                await supervisor.ensure_running("echo")
                slot = supervisor.get("echo")
                loop = asyncio.get_running_loop()
                pending = slot.correlation.register(1, loop.time() + 5)
                await slot.write({"jsonrpc": "2.0", "id": 1, "method": "diag"})
                await slot.correlation.wait(pending)

                deadline = loop.time() + 2
                while loop.time() < deadline:
                    messages = [c.args[0] for c in mock_logger.info.call_args_list if c.args]
                    if "[echo] part one part two" in messages:
                        break
                    await asyncio.sleep(0.02)

            assert "[echo] part one part two" in messages
            assert "[echo] part one" not in messages
        finally:
            await supervisor.shutdown_all()

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from vps_agent.command_dispatcher.service import CommandDispatcher
from vps_agent.exceptions import HandlerError
from vps_agent.handlers.context import ExecutionContext, LocalFilesystem, OutputCapture, ProcessResult
from vps_agent.handlers.deploy_script import DeployScriptHandler
from vps_agent.handlers.execute_shell import ExecuteShellHandler
from vps_agent.handlers.install_client import InstallPollingClientHandler
from vps_agent.handlers.reload_config import ReloadGostConfigHandler
from vps_agent.handlers.restart import RestartHandler
from vps_agent.schemas.command import (
    DeployParams,
    ExecuteParams,
    InstallPollingClientParams,
    ReloadGostConfigParams,
    RestartParams,
)
from vps_agent.schemas.envelope import Envelope, EnvelopeType


class FakeRunner:
    """Records spawned commands and replays canned results keyed by args[1]."""

    def __init__(self, results=None, output_lines=(), delays=None):
        self.results = results or {}
        self.output_lines = output_lines
        self.delays = delays or {}
        self.calls = []

    async def run(self, args, capture, env=None, on_output=None):
        self.calls.append(list(args))
        for line in self.output_lines:
            capture.append("stdout", line)
            if on_output is not None:
                await on_output(line)
        if args[1] in self.delays:
            await asyncio.sleep(self.delays[args[1]])
        result = self.results.get(args[1], ProcessResult(returncode=0, stdout="", stderr=""))
        if isinstance(result, Exception):
            raise result
        return result


def make_ctx(outbox=None, **kwargs):
    async def emit(envelope):
        if outbox is not None:
            outbox.append(envelope)

    return ExecutionContext(emit=emit, **kwargs).for_command("req-1", "test")


# ---------------------------------------------------------------- execute


@pytest.mark.asyncio
async def test_execute_captures_stdout():
    result = await ExecuteShellHandler().execute(ExecuteParams(command="echo hello"), make_ctx())

    assert result.success is True
    assert result.output == "hello\n"
    assert result.error is None


@pytest.mark.asyncio
async def test_execute_nonzero_exit_raises_with_output():
    with pytest.raises(HandlerError) as exc:
        await ExecuteShellHandler().execute(
            ExecuteParams(command="echo out; echo err >&2; exit 3"), make_ctx()
        )

    assert "code 3" in str(exc.value)
    assert exc.value.stdout == "out\n"
    assert exc.value.stderr == "err\n"


@pytest.mark.asyncio
async def test_execute_timeout_kills_and_keeps_partial_output():
    outbox = []
    dispatcher = CommandDispatcher([ExecuteShellHandler(timeout=0.5)])
    ctx = ExecutionContext(emit=lambda e: _append(outbox, e))

    dispatcher.dispatch(Envelope.command("slow", "execute", command="echo partial; sleep 10"), ctx)
    await asyncio.gather(*(p.task for p in dispatcher.pending.values()))

    payload = outbox[0].payload
    assert payload["success"] is False
    assert payload["error"] == "execute timed out after 0.5s"
    assert payload["output"] == "partial\n"


async def _append(outbox, envelope):
    outbox.append(envelope)


def test_output_capture_is_bounded():
    capture = OutputCapture(max_bytes=10)
    capture.append("stdout", "0123456789abc")
    capture.append("stdout", "more")
    capture.append("stderr", "err")

    assert capture.stdout == "0123456789"
    assert capture.stderr == "err"
    assert capture.truncated is True


# ---------------------------------------------------------------- deploy


@pytest.mark.asyncio
async def test_deploy_runs_script_and_removes_it(tmp_path):
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    marker = tmp_path / "marker"
    ctx = make_ctx(fs=LocalFilesystem(temp_dir=scripts))

    result = await DeployScriptHandler(shell="/bin/sh").execute(
        DeployParams(identifier="node-1", script=f"echo deployed > {marker}\necho done"), ctx
    )

    assert result.success is True
    assert "node-1" in result.message
    assert result.output == "done\n"
    assert marker.read_text() == "deployed\n"
    assert list(scripts.iterdir()) == []


@pytest.mark.asyncio
async def test_deploy_failure_removes_script(tmp_path):
    ctx = make_ctx(fs=LocalFilesystem(temp_dir=tmp_path))

    with pytest.raises(HandlerError) as exc:
        await DeployScriptHandler(shell="/bin/sh").execute(
            DeployParams(identifier="node-2", script="echo broken >&2\nexit 7"), ctx
        )

    assert "exit code 7" in str(exc.value)
    assert exc.value.stderr == "broken\n"
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_deploy_timeout_removes_script(tmp_path):
    handler = DeployScriptHandler(timeout=0.3, shell="/bin/sh")
    ctx = make_ctx(fs=LocalFilesystem(temp_dir=tmp_path))

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(
            handler.execute(DeployParams(identifier="node-3", script="sleep 10"), ctx), handler.timeout
        )

    assert list(tmp_path.iterdir()) == []


def test_deploy_accepts_node_id_alias():
    params = DeployScriptHandler().parse({"type": "deploy", "nodeId": "n-9", "script": "true"})
    assert params.identifier == "n-9"


def test_temp_script_sanitizes_prefix(tmp_path):
    fs = LocalFilesystem(temp_dir=tmp_path)
    with fs.temp_script(prefix="deploy_../../etc_", content="true") as path:
        assert path.parent == tmp_path
        assert path.stat().st_mode & 0o111
    assert not path.exists()


# ---------------------------------------------------------------- reload_gost_config


@pytest.mark.asyncio
async def test_reload_writes_config_and_reports_status(tmp_path):
    config_path = tmp_path / "gost" / "config.json"
    runner = FakeRunner(results={"is-active": ProcessResult(returncode=0, stdout="active\n", stderr="")})
    ctx = make_ctx(runner=runner)
    config = {"services": [{"name": "tcp-1", "addr": ":8080"}]}

    result = await ReloadGostConfigHandler(config_path=str(config_path), service_name="gost").execute(
        ReloadGostConfigParams(config=config), ctx
    )

    assert json.loads(config_path.read_text()) == config
    assert runner.calls == [["systemctl", "restart", "gost"], ["systemctl", "is-active", "gost"]]
    assert result.success is True
    assert result.to_payload() == {"success": True, "message": "GOST config applied", "serviceStatus": "active"}


@pytest.mark.asyncio
async def test_reload_tolerates_restart_failure(tmp_path):
    runner = FakeRunner(results={
        "restart": ProcessResult(returncode=5, stdout="", stderr="Unit gost.service not found.\n"),
        "is-active": ProcessResult(returncode=3, stdout="inactive\n", stderr=""),
    })

    result = await ReloadGostConfigHandler(config_path=str(tmp_path / "config.json")).execute(
        ReloadGostConfigParams(config={"services": []}), make_ctx(runner=runner)
    )

    assert result.success is True
    assert result.service_status == "inactive"
    assert "not found" in result.error


@pytest.mark.asyncio
async def test_reload_without_systemctl_reports_unknown(tmp_path):
    runner = FakeRunner(results={
        "restart": FileNotFoundError("systemctl"),
        "is-active": FileNotFoundError("systemctl"),
    })

    result = await ReloadGostConfigHandler(config_path=str(tmp_path / "config.json")).execute(
        ReloadGostConfigParams(config={}), make_ctx(runner=runner)
    )

    assert result.success is True
    assert result.service_status == "unknown"


@pytest.mark.asyncio
async def test_reload_write_failure_is_handler_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    runner = FakeRunner()

    with pytest.raises(HandlerError, match="Failed to write GOST config"):
        await ReloadGostConfigHandler(config_path=str(blocker / "config.json")).execute(
            ReloadGostConfigParams(config={}), make_ctx(runner=runner)
        )
    assert runner.calls == []


@pytest.mark.asyncio
async def test_reload_slow_restart_still_succeeds_within_budget(tmp_path):
    config_path = tmp_path / "config.json"
    runner = FakeRunner(
        results={"is-active": ProcessResult(returncode=3, stdout="activating\n", stderr="")},
        delays={"restart": 10},
    )
    handler = ReloadGostConfigHandler(config_path=str(config_path), timeout=0.5, restart_timeout=0.1, query_timeout=0.1)
    envelope = Envelope.command("r-reload", "reload_gost_config", config={"services": []})

    result = await CommandDispatcher([handler]).execute(envelope, make_ctx(runner=runner))

    assert result.success is True
    assert "timed out after 0.1s" in result.error
    assert result.service_status == "activating"
    assert json.loads(config_path.read_text()) == {"services": []}


@pytest.mark.asyncio
async def test_reload_slow_status_query_reports_unknown(tmp_path):
    runner = FakeRunner(delays={"is-active": 10})
    handler = ReloadGostConfigHandler(config_path=str(tmp_path / "config.json"), restart_timeout=0.1, query_timeout=0.1)

    result = await handler.execute(ReloadGostConfigParams(config={}), make_ctx(runner=runner))

    assert result.success is True
    assert result.error is None
    assert result.service_status == "unknown"


@pytest.mark.asyncio
async def test_reload_invalidates_cached_service_status(tmp_path):
    service_changed = MagicMock()
    ctx = make_ctx(runner=FakeRunner(), service_changed=service_changed)

    await ReloadGostConfigHandler(config_path=str(tmp_path / "config.json")).execute(
        ReloadGostConfigParams(config={}), ctx
    )

    service_changed.assert_called_once_with()


# ---------------------------------------------------------------- restart


@pytest.mark.asyncio
async def test_restart_schedules_exit():
    schedule_exit = MagicMock()
    ctx = make_ctx(schedule_exit=schedule_exit)

    result = await RestartHandler(delay=3).execute(RestartParams(), ctx)

    assert result.success is True
    assert result.message == "Agent restarting in 3s"
    schedule_exit.assert_called_once_with(3)


@pytest.mark.asyncio
async def test_restart_without_exit_hook_fails():
    with pytest.raises(HandlerError):
        await RestartHandler().execute(RestartParams(), make_ctx())


# ---------------------------------------------------------------- install_polling_client


@pytest.mark.asyncio
async def test_install_reports_progress(tmp_path):
    outbox = []
    runner = FakeRunner(output_lines=["Installing Node.js 18\n", "Creating systemd service\n", "Installation success\n"])
    ctx = make_ctx(outbox, runner=runner, fs=LocalFilesystem(temp_dir=tmp_path))

    result = await InstallPollingClientHandler().execute(InstallPollingClientParams(script="echo hi"), ctx)

    assert result.success is True
    progress = [e.payload for e in outbox if e.type == EnvelopeType.INSTALL_PROGRESS]
    assert [p["step"] for p in progress] == ["init", "save_script", "nodejs", "service", "complete", "success"]
    values = [p["progress"] for p in progress]
    assert values == sorted(values)
    assert progress[-1] == {"step": "success", "message": "Polling client installed", "progress": 100, "status": "success"}
    assert all(e.request_id == "req-1" for e in outbox)
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_install_failure_reports_error_progress(tmp_path):
    outbox = []
    runner = FakeRunner()
    ctx = make_ctx(outbox, runner=runner, fs=LocalFilesystem(temp_dir=tmp_path))

    async def failing_run(args, capture, env=None, on_output=None):
        capture.append("stderr", "curl: not found\n")
        return ProcessResult(returncode=127, stdout="", stderr="curl: not found\n")

    runner.run = failing_run

    with pytest.raises(HandlerError, match="exit code 127"):
        await InstallPollingClientHandler().execute(InstallPollingClientParams(script="curl x"), ctx)

    assert outbox[-1].payload["status"] == "error"

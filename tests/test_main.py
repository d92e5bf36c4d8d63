import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock

import pytest

from vps_agent import main as agent_main


@pytest.mark.asyncio
async def test_signal_shutdown_task_is_retained_until_done():
    session = MagicMock(stop=AsyncMock())

    task = agent_main._on_signal(session, signal.SIGTERM)
    assert task in agent_main._shutdown_tasks

    await task
    await asyncio.sleep(0)

    session.stop.assert_awaited_once_with(exit_code=0)
    assert task not in agent_main._shutdown_tasks


@pytest.mark.asyncio
async def test_missing_config_exits_with_error(tmp_path):
    assert await agent_main.main(str(tmp_path / "missing.json")) == 1

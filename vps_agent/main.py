# Must be imported first, installs the log formatter before any other module logs
from . import logger as _logger  # noqa: F401

import asyncio
import logging
import signal
import sys
from typing import Optional

from . import __version__
from .config import settings
from .exceptions import ConfigError
from .identity import load_agent_config
from .messaging.transport import WebSocketConnector
from .session.service import Session
from .utils import print_banner

logger = logging.getLogger("vps-agent")

# Strong references to in-flight shutdown tasks
_shutdown_tasks = set()


async def main(config_path: Optional[str] = None) -> int:
    """
    Main entry point for the VPS agent.
    Loads the identity file, opens the controller session and runs until
    stopped by a signal, a restart command or an authentication failure.
    Returns the process exit status.
    """
    print_banner("VPS-Agent", __version__)
    path = config_path or settings.CONFIG_PATH
    logger.info(f"Starting VPS agent with config {path}...")

    try:
        config = load_agent_config(path)
    except ConfigError as e:
        logger.critical(f"Cannot start: {e}")
        return 1

    session = Session(config, connector=WebSocketConnector())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, session, sig)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await session.start()
    exit_code = await session.wait_closed()
    logger.info(f"VPS agent stopped (exit code {exit_code})")
    return exit_code


def _on_signal(session: Session, sig: signal.Signals) -> asyncio.Task:
    task = asyncio.create_task(_shutdown(session, sig), name=f"shutdown-{sig.name}")
    _shutdown_tasks.add(task)
    task.add_done_callback(_shutdown_tasks.discard)
    return task


async def _shutdown(session: Session, sig: signal.Signals):
    logger.info(f"Received {sig.name}, shutting down...")
    await session.stop(exit_code=0)


def run():
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        sys.exit(asyncio.run(main(config_path)))
    except KeyboardInterrupt:
        logger.info("VPS agent stopped by user.")


if __name__ == "__main__":
    run()

import logging
from typing import Optional

from ..config import settings
from ..exceptions import HandlerError
from ..schemas.command import CommandResult, RestartParams
from .base import BaseHandler
from .context import ExecutionContext

logger = logging.getLogger("vps-agent.handlers.restart")


class RestartHandler(BaseHandler):
    """
    Exits the agent after a short delay so the service manager restarts it.
    The delay leaves time for the success response to reach the controller.
    """
    params_model = RestartParams

    def __init__(self, delay: Optional[float] = None):
        self.command_type = "restart"
        self.timeout = settings.INSTANT_TIMEOUT_SECONDS
        self.delay = settings.RESTART_DELAY_SECONDS if delay is None else delay

    async def execute(self, params: RestartParams, ctx: ExecutionContext) -> CommandResult:
        if ctx.schedule_exit is None:
            raise HandlerError("Restart is not available in this context")
        logger.warning(f"Restart requested ({ctx.request_id}), exiting in {self.delay}s")
        ctx.schedule_exit(self.delay)
        return CommandResult(success=True, message=f"Agent restarting in {self.delay:g}s")

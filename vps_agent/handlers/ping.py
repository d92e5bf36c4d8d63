import logging

from ..config import settings
from ..schemas.command import CommandResult, PingParams
from .base import BaseHandler
from .context import ExecutionContext

logger = logging.getLogger("vps-agent.handlers.ping")


class PingHandler(BaseHandler):
    params_model = PingParams

    def __init__(self):
        self.command_type = "ping"
        self.timeout = settings.INSTANT_TIMEOUT_SECONDS

    async def execute(self, params: PingParams, ctx: ExecutionContext) -> CommandResult:
        logger.debug(f"Ping {ctx.request_id}")
        return CommandResult(success=True, message="pong")

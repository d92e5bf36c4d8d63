import logging
from typing import Optional

from ..config import settings
from ..exceptions import HandlerError
from ..schemas.command import CommandResult, ExecuteParams
from .base import BaseHandler
from .context import ExecutionContext

logger = logging.getLogger("vps-agent.handlers.execute")


class ExecuteShellHandler(BaseHandler):
    """
    Runs an arbitrary shell command line with /bin/sh -c.
    params: {"command": str}
    """
    params_model = ExecuteParams

    def __init__(self, timeout: Optional[float] = None):
        self.command_type = "execute"
        self.timeout = settings.EXECUTE_TIMEOUT_SECONDS if timeout is None else timeout

    async def execute(self, params: ExecuteParams, ctx: ExecutionContext) -> CommandResult:
        logger.info(f"Executing shell command for {ctx.request_id}: {params.command[:200]}")
        result = await ctx.run_process(["/bin/sh", "-c", params.command])
        if result.returncode != 0:
            raise HandlerError(
                f"Command exited with code {result.returncode}",
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return CommandResult(
            success=True,
            message="Command completed",
            output=result.stdout,
            error=result.stderr or None,
        )

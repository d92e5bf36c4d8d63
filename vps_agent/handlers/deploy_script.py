import logging
from typing import Optional

from ..config import settings
from ..exceptions import HandlerError
from ..schemas.command import CommandResult, DeployParams
from .base import BaseHandler
from .context import ExecutionContext

logger = logging.getLogger("vps-agent.handlers.deploy")


class DeployScriptHandler(BaseHandler):
    """
    Deployment script runner.
    Responsibility: persist the controller-supplied script to a temporary
    executable file, run it, and remove the file on every exit path
    (success, failure, timeout, abandoned connection).

    params: {"identifier" | "nodeId": str, "script": str}
    """
    params_model = DeployParams

    def __init__(self, timeout: Optional[float] = None, shell: Optional[str] = None):
        self.command_type = "deploy"
        self.timeout = settings.DEPLOY_TIMEOUT_SECONDS if timeout is None else timeout
        self.shell = shell or settings.SCRIPT_SHELL

    async def execute(self, params: DeployParams, ctx: ExecutionContext) -> CommandResult:
        logger.info(f"Starting deployment {params.identifier} ({ctx.request_id})")
        try:
            with ctx.fs.temp_script(prefix=f"deploy_{params.identifier}_", content=params.script) as path:
                result = await ctx.run_process([self.shell, str(path)])
        except OSError as e:
            raise HandlerError(f"Deployment {params.identifier} could not run: {e}") from e

        if result.returncode != 0:
            logger.error(f"Deployment {params.identifier} failed with exit code {result.returncode}")
            raise HandlerError(
                f"Deployment {params.identifier} failed with exit code {result.returncode}",
                stdout=result.stdout,
                stderr=result.stderr,
            )

        logger.info(f"Deployment {params.identifier} completed")
        return CommandResult(
            success=True,
            message=f"Deployment {params.identifier} completed",
            output=result.stdout,
            error=result.stderr or None,
        )

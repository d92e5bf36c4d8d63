import asyncio
import logging
from typing import Optional

from ..config import settings
from ..exceptions import HandlerError
from ..schemas.command import CommandResult, ReloadGostConfigParams
from .base import BaseHandler
from .context import ExecutionContext

logger = logging.getLogger("vps-agent.handlers.reload-config")


class ReloadGostConfigHandler(BaseHandler):
    """
    Applies a new GOST tunnel configuration.

    The config counts as applied once it is on disk: a failed or slow service
    restart is reported through error/serviceStatus, not as a command failure.
    Each systemctl call has its own bound, shorter than the handler budget.

    params: {"config": object}
    """
    params_model = ReloadGostConfigParams

    def __init__(
        self,
        config_path: Optional[str] = None,
        service_name: Optional[str] = None,
        timeout: Optional[float] = None,
        restart_timeout: Optional[float] = None,
        query_timeout: Optional[float] = None,
    ):
        self.command_type = "reload_gost_config"
        self.config_path = config_path or settings.GOST_CONFIG_PATH
        self.service_name = service_name or settings.GOST_SERVICE_NAME
        self.timeout = settings.RELOAD_TIMEOUT_SECONDS if timeout is None else timeout
        self.restart_timeout = settings.SERVICE_RESTART_TIMEOUT_SECONDS if restart_timeout is None else restart_timeout
        self.query_timeout = settings.SERVICE_QUERY_TIMEOUT_SECONDS if query_timeout is None else query_timeout

    async def execute(self, params: ReloadGostConfigParams, ctx: ExecutionContext) -> CommandResult:
        try:
            await asyncio.to_thread(ctx.fs.write_json, self.config_path, params.config)
        except (OSError, TypeError, ValueError) as e:
            raise HandlerError(f"Failed to write GOST config to {self.config_path}: {e}") from e
        logger.info(f"GOST config written to {self.config_path} ({ctx.request_id})")

        restart_error = await self._restart(ctx)
        if restart_error:
            logger.warning(f"Restart of {self.service_name} failed: {restart_error}")

        service_status = await self._query_status(ctx)
        logger.info(f"{self.service_name} status after reload: {service_status}")

        if ctx.service_changed is not None:
            ctx.service_changed()

        return CommandResult(
            success=True,
            message="GOST config applied",
            error=restart_error,
            service_status=service_status,
        )

    async def _restart(self, ctx: ExecutionContext) -> Optional[str]:
        try:
            restart = await asyncio.wait_for(
                ctx.run_process(["systemctl", "restart", self.service_name]), self.restart_timeout
            )
        except asyncio.TimeoutError:
            return f"systemctl restart {self.service_name} timed out after {self.restart_timeout:g}s"
        except OSError as e:
            return str(e)
        if restart.returncode != 0:
            return restart.stderr.strip() or f"systemctl restart exited with code {restart.returncode}"
        return None

    async def _query_status(self, ctx: ExecutionContext) -> str:
        try:
            result = await asyncio.wait_for(
                ctx.run_process(["systemctl", "is-active", self.service_name]), self.query_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Status query for {self.service_name} timed out after {self.query_timeout:g}s")
            return "unknown"
        except OSError as e:
            logger.warning(f"Could not query {self.service_name} status: {e}")
            return "unknown"
        return result.stdout.strip() or "unknown"

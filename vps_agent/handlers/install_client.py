import logging
from typing import Optional

from ..config import settings
from ..exceptions import HandlerError
from ..schemas.command import CommandResult, InstallPollingClientParams
from .base import BaseHandler
from .context import ExecutionContext

logger = logging.getLogger("vps-agent.handlers.install-client")

# Output keyword → (step, message, progress). First match wins.
_STAGES = [
    (("node.js", "nodejs"), "nodejs", "Installing Node.js...", 20),
    (("directory", "writing"), "setup", "Configuring polling client...", 50),
    (("systemd", "service"), "service", "Configuring systemd service...", 70),
    (("starting", "enable"), "start", "Starting service...", 85),
    (("success", "active"), "complete", "Installation finished", 95),
]


class InstallPollingClientHandler(BaseHandler):
    """
    Installs the GOST polling client from a controller-supplied script.
    Like deploy, but long-running, so it streams install_progress envelopes
    as the script produces output.

    params: {"script": str}
    """
    params_model = InstallPollingClientParams

    def __init__(self, timeout: Optional[float] = None, shell: Optional[str] = None):
        self.command_type = "install_polling_client"
        self.timeout = settings.INSTALL_TIMEOUT_SECONDS if timeout is None else timeout
        self.shell = shell or settings.SCRIPT_SHELL

    async def execute(self, params: InstallPollingClientParams, ctx: ExecutionContext) -> CommandResult:
        logger.info(f"Installing polling client ({ctx.request_id})")
        await ctx.report_progress("init", "Starting polling client installation...", 0)

        progress = 10

        async def on_output(text: str) -> None:
            nonlocal progress
            lowered = text.lower()
            for keywords, step, message, value in _STAGES:
                if any(k in lowered for k in keywords):
                    progress = max(progress, value)
                    await ctx.report_progress(step, message, progress)
                    return
            if progress < 90:
                progress = min(progress + 2, 90)
                await ctx.report_progress("progress", text.strip()[:100], progress)

        try:
            with ctx.fs.temp_script(prefix="install_polling_client_", content=params.script) as path:
                await ctx.report_progress("save_script", "Script saved to temporary file", 5)
                result = await ctx.run_process([self.shell, str(path)], on_output=on_output)
        except OSError as e:
            await ctx.report_progress("error", f"Installation failed: {e}", 0, status="error")
            raise HandlerError(f"Polling client installation could not run: {e}") from e

        if result.returncode != 0:
            await ctx.report_progress(
                "error", f"Installation failed (exit code {result.returncode})", progress, status="error"
            )
            raise HandlerError(
                f"Polling client installation failed with exit code {result.returncode}",
                stdout=result.stdout,
                stderr=result.stderr,
            )

        await ctx.report_progress("success", "Polling client installed", 100, status="success")
        logger.info("Polling client installed")
        return CommandResult(
            success=True,
            message="Polling client installed",
            output=result.stdout,
            error=result.stderr or None,
        )

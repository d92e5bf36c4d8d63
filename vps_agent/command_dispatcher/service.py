import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from ..exceptions import HandlerError, TransportClosedError
from ..handlers.base import BaseHandler
from ..handlers.context import ExecutionContext
from ..handlers.deploy_script import DeployScriptHandler
from ..handlers.execute_shell import ExecuteShellHandler
from ..handlers.install_client import InstallPollingClientHandler
from ..handlers.ping import PingHandler
from ..handlers.reload_config import ReloadGostConfigHandler
from ..handlers.restart import RestartHandler
from ..schemas.command import CommandResult
from ..schemas.envelope import Envelope

logger = logging.getLogger("vps-agent.dispatcher")


@dataclass
class PendingCommand:
    request_id: str
    received_at: float
    handler_kind: str
    task: Optional[asyncio.Task] = None


def default_handlers() -> Dict[str, BaseHandler]:
    handlers = [
        PingHandler(),
        ExecuteShellHandler(),
        DeployScriptHandler(),
        ReloadGostConfigHandler(),
        RestartHandler(),
        InstallPollingClientHandler(),
    ]
    return {h.command_type: h for h in handlers}


class CommandDispatcher:
    """
    Command Dispatcher.
    Responsibility: Route controller commands to handlers by kind, keep at
    most one handler per requestId in flight, enforce each handler's budget,
    and send exactly one response per command unless the connection drops
    first (in which case the command is abandoned silently).
    """

    def __init__(self, handlers: Optional[Iterable[BaseHandler]] = None):
        if handlers is None:
            self.handlers = default_handlers()
        else:
            self.handlers = {h.command_type: h for h in handlers}
        self._pending: Dict[str, PendingCommand] = {}

    @property
    def pending(self) -> Dict[str, PendingCommand]:
        return dict(self._pending)

    def dispatch(self, envelope: Envelope, ctx: ExecutionContext) -> bool:
        """
        Start handling a command envelope in the background.
        Returns False if the requestId is already in flight (duplicate ignored).
        """
        request_id = envelope.request_id
        kind = envelope.command_kind

        existing = self._pending.get(request_id)
        if existing is not None:
            logger.warning(
                f"Duplicate command {request_id} ({kind}) ignored: "
                f"{existing.handler_kind} still running"
            )
            return False

        pending = PendingCommand(request_id=request_id, received_at=ctx.clock(), handler_kind=kind)
        self._pending[request_id] = pending
        command_ctx = ctx.for_command(request_id, kind)
        pending.task = asyncio.create_task(self._run(envelope, command_ctx), name=f"command-{request_id}")
        pending.task.add_done_callback(lambda _t: self._forget(pending))
        logger.info(f"Command {request_id} ({kind}) accepted")
        return True

    def _forget(self, pending: PendingCommand) -> None:
        if self._pending.get(pending.request_id) is pending:
            del self._pending[pending.request_id]

    async def _run(self, envelope: Envelope, ctx: ExecutionContext) -> None:
        result = await self.execute(envelope, ctx)
        response = Envelope.response(ctx.request_id, result.to_payload())
        if ctx.emit is None:
            logger.warning(f"No outbound channel, response for {ctx.request_id} dropped")
            return
        try:
            await ctx.emit(response)
        except TransportClosedError as e:
            logger.warning(f"Response for {ctx.request_id} ({ctx.kind}) abandoned: {e}")
            return
        status = "succeeded" if result.success else "failed"
        logger.info(f"Command {ctx.request_id} ({ctx.kind}) {status}")

    async def execute(self, envelope: Envelope, ctx: ExecutionContext) -> CommandResult:
        """Run the handler for one command and convert every outcome into a CommandResult."""
        kind = envelope.command_kind
        handler = self.handlers.get(kind)
        if handler is None:
            logger.warning(f"Unsupported command type '{kind}' ({envelope.request_id})")
            return CommandResult.failure(f"Unsupported command: {kind}")

        try:
            params = handler.parse(envelope.payload)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            logger.warning(f"Invalid parameters for {kind} ({envelope.request_id}): {problems}")
            return CommandResult.failure(f"Invalid parameters for {kind}: {problems}")

        task = asyncio.ensure_future(handler.execute(params, ctx))
        try:
            done, _ = await asyncio.wait({task}, timeout=handler.timeout)
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        # Budget expiry is decided here, never inferred from a TimeoutError the handler raised itself
        if task not in done:
            stdout, stderr = ctx.partial_output()
            logger.error(f"Command {ctx.request_id} ({kind}) timed out after {handler.timeout:g}s")
            return CommandResult.failure(f"{kind} timed out after {handler.timeout:g}s", output=stdout, stderr=stderr)

        try:
            return task.result()
        except HandlerError as e:
            partial_stdout, partial_stderr = ctx.partial_output()
            stdout = e.stdout if e.stdout is not None else partial_stdout
            stderr = e.stderr if e.stderr is not None else partial_stderr
            logger.error(f"Command {ctx.request_id} ({kind}) failed: {e}")
            return CommandResult.failure(str(e), output=stdout, stderr=stderr)
        except Exception as e:
            stdout, stderr = ctx.partial_output()
            logger.error(f"Command {ctx.request_id} ({kind}) raised: {e}", exc_info=True)
            return CommandResult.failure(str(e) or type(e).__name__, output=stdout, stderr=stderr)

    async def abandon_all(self) -> None:
        """Cancel every in-flight command without responding. Their subprocesses are killed."""
        pending = list(self._pending.values())
        self._pending.clear()
        if not pending:
            return
        logger.warning(f"Abandoning {len(pending)} in-flight command(s): {', '.join(p.request_id for p in pending)}")
        current = asyncio.current_task()
        tasks = [p.task for p in pending if p.task is not None and p.task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

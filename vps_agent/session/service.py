import asyncio
import logging
from dataclasses import replace
from typing import Optional, Union

from ..collector.host_snapshot import HostSnapshotCollector
from ..command_dispatcher.service import CommandDispatcher
from ..config import settings
from ..exceptions import AuthenticationError, DecodeError, TransportClosedError
from ..handlers.context import ExecutionContext
from ..messaging import codec
from ..messaging.transport import WebSocketConnector
from ..schemas.agent import AgentConfig
from ..schemas.envelope import Envelope, EnvelopeType
from .state import SessionState
from .timers import PeriodicTimer, Timer

logger = logging.getLogger("vps-agent.session")

# error.code values meaning the credentials are wrong; retrying cannot help
AUTH_FAILURE_CODES = {"auth_failed", "authentication_failed", "invalid_secret", "invalid_credentials", "unauthorized"}


class Session:
    """
    Session with the controller.
    Responsibility: own the single WebSocket connection and drive the
    connect → register → heartbeat → command → reconnect state machine.

    All timers (reconnect, registration, heartbeat, restart) are owned here
    and cancelled before any state change that invalidates them.
    """

    def __init__(
        self,
        config: AgentConfig,
        connector=None,
        collector=None,
        dispatcher: Optional[CommandDispatcher] = None,
        context: Optional[ExecutionContext] = None,
        heartbeat_interval: Optional[float] = None,
        max_skipped_heartbeats: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
        reconnect_backoff: Optional[float] = None,
        max_reconnect_delay: Optional[float] = None,
        registration_timeout: Optional[float] = None,
    ):
        self._config = config
        self._identity = config.identity
        self._connector = connector or WebSocketConnector()
        self._collector = collector or HostSnapshotCollector()
        self.dispatcher = dispatcher or CommandDispatcher()
        self._context = replace(
            context or ExecutionContext(),
            emit=self.send,
            schedule_exit=self._schedule_exit,
            service_changed=getattr(self._collector, "invalidate_service_status", None),
        )

        self._heartbeat_interval = heartbeat_interval or settings.HEARTBEAT_INTERVAL_SECONDS
        self._max_skipped = settings.MAX_SKIPPED_HEARTBEATS if max_skipped_heartbeats is None else max_skipped_heartbeats
        self._reconnect_delay = reconnect_delay or settings.RECONNECT_DELAY_SECONDS
        self._backoff = reconnect_backoff or settings.RECONNECT_BACKOFF_FACTOR
        self._max_reconnect_delay = max_reconnect_delay or settings.RECONNECT_MAX_DELAY_SECONDS
        self._registration_timeout = registration_timeout or settings.REGISTRATION_TIMEOUT_SECONDS
        self._next_reconnect_delay = self._reconnect_delay

        self._state = SessionState.DISCONNECTED
        self._transport = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_timer: Optional[Timer] = None
        self._registration_timer: Optional[Timer] = None
        self._heartbeat_timer: Optional[PeriodicTimer] = None
        self._exit_timer: Optional[Timer] = None

        # Ticks are skipped while the previous heartbeat is unacknowledged
        self._heartbeat_unacked = False
        self._skipped_heartbeats = 0

        self._stopping = False
        self._exit_code = 0
        self.fault: Optional[Exception] = None
        self._closed = asyncio.Event()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def heartbeat_active(self) -> bool:
        return self._heartbeat_timer is not None and self._heartbeat_timer.active

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None and self._reconnect_timer.active

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        if self._stopping:
            raise RuntimeError("Session already stopped")
        logger.info(f"Session starting for agent {self._identity.agent_id} → {self._config.server_url}")
        await self._connect()

    async def stop(self, exit_code: int = 0):
        """Cancel timers, abandon commands, close the connection. Terminal."""
        if self._stopping:
            return
        self._stopping = True
        self._exit_code = exit_code
        logger.info(f"Session stopping (exit code {exit_code})")

        for name in ("_reconnect_timer", "_registration_timer", "_heartbeat_timer", "_exit_timer"):
            self._cancel_timer(name)

        transport, self._transport = self._transport, None
        await self.dispatcher.abandon_all()
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug(f"Error closing transport: {e}")

        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        self._transition(SessionState.DISCONNECTED)
        self._closed.set()
        logger.info("Session stopped.")

    async def wait_closed(self) -> int:
        """Block until the session is stopped; returns the process exit status."""
        await self._closed.wait()
        return self._exit_code

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _connect(self):
        self._cancel_timer("_reconnect_timer")
        if self._stopping or self._state != SessionState.DISCONNECTED:
            return
        self._transition(SessionState.CONNECTING)
        url = self._config.server_url
        try:
            transport = await self._connector.connect(url)
        except Exception as e:
            logger.warning(f"Connection to {url} failed: {e}")
            self._transition(SessionState.DISCONNECTED)
            self._schedule_reconnect()
            return

        if self._stopping:
            await transport.close()
            return

        logger.info(f"Connected to {url}")
        self._transport = transport
        self._transition(SessionState.AWAITING_REGISTRATION)
        try:
            await self._send_register()
        except TransportClosedError as e:
            await self._handle_disconnect(transport, f"register failed: {e}")
            return
        if self._stopping:
            return
        self._registration_timer = Timer(self._registration_timeout, self._on_registration_timeout, "registration")
        self._reader_task = asyncio.create_task(self._read_loop(transport), name="session-reader")

    async def _read_loop(self, transport):
        reason = "closed by peer"
        try:
            async for raw in transport.messages():
                await self._on_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"connection error: {e}"
            logger.warning(f"Receive failed: {e}")
        await self._handle_disconnect(transport, reason)

    async def _handle_disconnect(self, transport, reason: str):
        if transport is not self._transport or self._stopping:
            return
        self._cancel_timer("_heartbeat_timer")
        self._cancel_timer("_registration_timer")
        self._transport = None

        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport: {e}")
        await self.dispatcher.abandon_all()

        logger.warning(f"Connection lost ({reason})")
        self._transition(SessionState.DISCONNECTED)
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self._stopping:
            return
        self._cancel_timer("_reconnect_timer")
        delay = self._next_reconnect_delay
        logger.info(f"Reconnecting in {delay:g}s...")
        self._reconnect_timer = Timer(delay, self._connect, "reconnect")
        self._next_reconnect_delay = min(delay * self._backoff, max(self._max_reconnect_delay, self._reconnect_delay))

    async def _on_registration_timeout(self):
        logger.warning(f"No registration ack within {self._registration_timeout:g}s")
        await self._handle_disconnect(self._transport, "registration timeout")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _on_frame(self, raw: Union[str, bytes]):
        try:
            envelope = codec.decode(raw)
        except DecodeError as e:
            logger.warning(f"Discarding malformed frame: {e}")
            return

        kind = envelope.type
        if kind == EnvelopeType.REGISTERED:
            if self._state == SessionState.AWAITING_REGISTRATION:
                await self._on_registered()
            else:
                logger.debug(f"Ignoring registered ack in state {self._state.value}")
        elif kind == EnvelopeType.HEARTBEAT_ACK:
            self._heartbeat_unacked = False
            self._skipped_heartbeats = 0
        elif kind == EnvelopeType.ERROR:
            await self._on_error(envelope)
        elif kind == EnvelopeType.COMMAND:
            if self._state == SessionState.ACTIVE:
                self.dispatcher.dispatch(envelope, self._context)
            else:
                logger.warning(
                    f"Command {envelope.request_id} ({envelope.command_kind}) ignored in state {self._state.value}"
                )
        else:
            logger.debug(f"Ignoring unexpected {kind.value} envelope")

    async def _on_registered(self):
        self._cancel_timer("_registration_timer")
        self._next_reconnect_delay = self._reconnect_delay
        self._heartbeat_unacked = False
        self._skipped_heartbeats = 0
        self._transition(SessionState.ACTIVE)
        logger.info(f"Registered as {self._identity.agent_id}")

        # First tick fires at once; collection runs in the timer task so the reader keeps reading
        self._heartbeat_timer = PeriodicTimer(self._heartbeat_interval, self._send_heartbeat, "heartbeat", first_delay=0)

    async def _on_error(self, envelope: Envelope):
        payload = envelope.payload
        code = str(payload.get("code") or payload.get("reason") or "").lower()
        message = payload.get("message") or code or "unknown error"
        if code in AUTH_FAILURE_CODES:
            self.fault = AuthenticationError(f"Controller rejected credentials: {message}")
            logger.critical(f"{self.fault}. Agent {self._identity.agent_id} will not retry.")
            await self.stop(exit_code=1)
            return
        logger.error(f"Controller reported an error: {message}")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, envelope: Envelope):
        """Stamp identity and write one envelope. Raises TransportClosedError when offline."""
        transport = self._transport
        if transport is None:
            raise TransportClosedError("Not connected")
        stamped = envelope.model_copy(update={"agent_id": self._identity.agent_id, "secret": self._identity.secret})
        await transport.send(codec.encode(stamped))

    async def _send_register(self):
        payload = {"name": self._identity.display_name, **self._collector.host_identity()}
        await self.send(Envelope(type=EnvelopeType.REGISTER, payload=payload))
        logger.info("Register message sent")

    async def _send_heartbeat(self):
        if self._heartbeat_unacked:
            if self._skipped_heartbeats < self._max_skipped:
                self._skipped_heartbeats += 1
                logger.debug(f"Previous heartbeat not acknowledged, skipping ({self._skipped_heartbeats})")
                return
            logger.warning(f"No heartbeat ack for {self._skipped_heartbeats} intervals, sending anyway")
        self._skipped_heartbeats = 0

        snapshot = await asyncio.to_thread(self._collector.collect)
        if self._state != SessionState.ACTIVE or self._stopping:
            return
        try:
            await self.send(Envelope(type=EnvelopeType.HEARTBEAT, payload=snapshot.to_payload()))
        except TransportClosedError as e:
            logger.warning(f"Heartbeat not sent: {e}")
            return
        self._heartbeat_unacked = True
        logger.info(f"Heartbeat sent - CPU: {snapshot.cpu_usage_percent}%, memory: {snapshot.memory.percent}%")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _schedule_exit(self, delay: float):
        self._cancel_timer("_exit_timer")
        self._exit_timer = Timer(delay, self._exit_for_restart, "restart")

    async def _exit_for_restart(self):
        logger.warning("Exiting for restart")
        await self.stop(exit_code=0)

    def _cancel_timer(self, name: str):
        timer = getattr(self, name)
        if timer is not None:
            timer.cancel()
            setattr(self, name, None)

    def _transition(self, new_state: SessionState):
        if new_state != self._state:
            logger.info(f"State: {self._state.value} → {new_state.value}")
            self._state = new_state

import asyncio
import logging
from typing import AsyncIterator, Optional, Union

import aiohttp

from ..config import settings
from ..exceptions import TransportClosedError

logger = logging.getLogger("vps-agent.transport")


class WebSocketTransport:
    """
    One open WebSocket to the controller.
    Writes are serialized with a lock: handler completions, progress reports
    and heartbeats all share this connection and must not interleave frames.
    """

    def __init__(self, ws: aiohttp.ClientWebSocketResponse, session: aiohttp.ClientSession):
        self._ws = ws
        self._session = session
        self._write_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, data: bytes) -> None:
        async with self._write_lock:
            if self._ws.closed:
                raise TransportClosedError("WebSocket is closed")
            try:
                await self._ws.send_str(data.decode("utf-8"))
            except (ConnectionError, aiohttp.ClientError, RuntimeError) as e:
                raise TransportClosedError(f"Send failed: {e}") from e

    async def messages(self) -> AsyncIterator[Union[str, bytes]]:
        """Yield inbound frames until the connection closes."""
        async for msg in self._ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                yield msg.data
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"WebSocket error: {self._ws.exception()}")
                break
            else:
                break
        logger.info(f"WebSocket closed (code={self._ws.close_code})")

    async def close(self) -> None:
        try:
            if not self._ws.closed:
                await self._ws.close()
        finally:
            await self._session.close()


class WebSocketConnector:
    """Opens WebSocketTransport instances to the controller."""

    def __init__(self, user_agent: Optional[str] = None, connect_timeout: Optional[float] = None):
        self._user_agent = user_agent or settings.USER_AGENT
        self._connect_timeout = connect_timeout or settings.CONNECT_TIMEOUT_SECONDS

    async def connect(self, url: str) -> WebSocketTransport:
        """
        Open a connection. Raises OSError, aiohttp.ClientError or
        asyncio.TimeoutError when the controller cannot be reached.
        """
        session = aiohttp.ClientSession(headers={"User-Agent": self._user_agent})
        try:
            ws = await asyncio.wait_for(session.ws_connect(url), timeout=self._connect_timeout)
        except BaseException:
            await session.close()
            raise
        return WebSocketTransport(ws, session)

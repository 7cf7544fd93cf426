"""
Transport Channel to the physical Harmony Hub.

HubTransport is the contract the session relies on; WebSocketTransport talks
to a real hub with aiohttp: an HTTP POST to pair, then a persistent websocket
that carries commands, replies and spontaneous notifications.
"""

import asyncio
import contextlib
import functools
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import aiohttp

from . import messages
from .config import SessionConfig
from .errors import HandshakeError, HubConnectionError, HubError

logger = logging.getLogger(__name__)

NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError)


def network_retry(max_attempts: int = 3, base_delay: float = 0.5, max_delay: float = 5.0):
    """
    Decorator for connection steps with exponential backoff retry logic.

    Only network errors are retried. When the decorated method's instance has a
    ``retry_attempts`` attribute it overrides ``max_attempts``.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        base_delay: Base delay in seconds for exponential backoff (default: 0.5)
        max_delay: Maximum delay in seconds between retries (default: 5.0)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            attempts = getattr(args[0], "retry_attempts", max_attempts) if args else max_attempts
            attempts = max(1, attempts)
            last_exception = None

            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except NETWORK_ERRORS as e:
                    last_exception = e
                    if attempt == attempts - 1:
                        break

                    delay = min(base_delay * (2 ** attempt), max_delay)
                    # jitter so that several clients do not retry in lockstep
                    total_delay = delay + random.uniform(0, 0.1 * delay)
                    logger.debug("Network error on attempt %d/%d, retrying in %.2fs: %s",
                                 attempt + 1, attempts, total_delay, e)
                    await asyncio.sleep(total_delay)

            raise last_exception

        return wrapper
    return decorator


class HubTransport(ABC):
    """
    What the session needs from a connection to the hub.

    Implementations call ``on_frame`` for every decoded inbound frame and
    ``on_fault`` once if the connection is lost without ``close()`` being
    called. Both callbacks run on the session's event loop.
    """

    def __init__(self):
        self.on_frame: Optional[Callable[[Dict[str, Any]], None]] = None
        self.on_fault: Optional[Callable[[HubError], None]] = None

    @abstractmethod
    async def open(self) -> None:
        """Prepare network resources"""

    @abstractmethod
    async def handshake(self) -> int:
        """Pair with the hub and return the remote id"""

    @abstractmethod
    async def open_channel(self, remote_id: int) -> None:
        """Open the command channel for an established remote id"""

    @abstractmethod
    async def send(self, frame: Dict[str, Any]) -> None:
        """Write one command frame; raises HubConnectionError if it cannot"""

    @abstractmethod
    async def close(self) -> None:
        """Release every resource; must be safe to call more than once"""

    def _deliver_frame(self, frame: Dict[str, Any]) -> None:
        if self.on_frame is not None:
            self.on_frame(frame)

    def _report_fault(self, error: HubError) -> None:
        if self.on_fault is not None:
            self.on_fault(error)


class WebSocketTransport(HubTransport):
    """aiohttp transport for a hub on the local network"""

    def __init__(self, ip4_address: str, config: Optional[SessionConfig] = None):
        super().__init__()
        self._config = config or SessionConfig()
        self.base_url = f"http://{ip4_address}:{self._config.port}"
        self.retry_attempts = self._config.retry_attempts
        self.session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    def channel_url(self, remote_id: int) -> str:
        return f"{self.base_url}/?domain=svcs.myharmony.com&hubId={remote_id}"

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self) -> None:
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self._config.http_timeout,
                                            connect=self._config.connect_timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)
        self._closing = False

    @network_retry(max_attempts=3, base_delay=0.5, max_delay=5.0)
    async def _post_provision(self) -> Any:
        async with self.session.post(self.base_url, json=messages.provision_request(),
                                     headers=messages.PROVISION_HEADERS) as resp:
            if resp.status != 200:
                raise HandshakeError(f"Hub answered pairing with HTTP {resp.status}")
            return await resp.json(content_type=None)

    async def handshake(self) -> int:
        if self.session is None:
            await self.open()
        try:
            reply = await self._post_provision()
        except NETWORK_ERRORS as e:
            raise HubConnectionError(f"Unable to reach hub at {self.base_url}: {e}") from e
        except ValueError as e:
            raise HandshakeError(f"Provisioning reply is not valid JSON: {e}") from e
        return messages.parse_remote_id(reply)

    @network_retry(max_attempts=3, base_delay=0.5, max_delay=5.0)
    async def _ws_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        return await self.session.ws_connect(url)

    async def open_channel(self, remote_id: int) -> None:
        if self.session is None:
            await self.open()
        try:
            self._ws = await self._ws_connect(self.channel_url(remote_id))
        except NETWORK_ERRORS as e:
            raise HubConnectionError(f"Unable to open websocket to {self.base_url}: {e}") from e
        self._reader = asyncio.get_running_loop().create_task(self._read_frames(self._ws))

    async def send(self, frame: Dict[str, Any]) -> None:
        if not self.connected:
            raise HubConnectionError("WebSocket is not open")
        try:
            await self._ws.send_str(json.dumps(frame))
        except NETWORK_ERRORS as e:
            raise HubConnectionError(f"WebSocket send failed: {e}") from e

    async def _read_frames(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        error = None
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError as e:
                        logger.error("%s: Dropping malformed frame: %s", self.base_url, e)
                        continue
                    if not isinstance(frame, dict):
                        logger.error("%s: Dropping non-object frame: %r", self.base_url, frame)
                        continue
                    self._deliver_frame(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = HubConnectionError(f"WebSocket error: {ws.exception()}")
                    break
        except NETWORK_ERRORS as e:
            error = HubConnectionError(f"WebSocket read failed: {e}")

        if not self._closing:
            self._report_fault(error or HubConnectionError("WebSocket connection closed"))

    async def close(self) -> None:
        self._closing = True
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self.session is not None:
            await self.session.close()
            self.session = None

"""
Response Correlator - matches hub replies to outstanding requests.

Every method must run on the session's event loop; that confinement is what
serializes access to the pending map, so completions are always invoked with
no lock held and may call back into the session.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from . import messages
from .errors import CommandTimeout, HubConnectionError, HubError, UnmatchedResponse
from .responses import Failure, Response, Success

logger = logging.getLogger(__name__)

Completion = Callable[[Response], None]

SENT_DOCUMENT = {"status": "sent"}


def deliver(completion: Optional[Completion], response: Response, label: str = "request") -> None:
    """Invoke a completion, logging (not propagating) anything it raises"""
    if completion is None:
        return
    try:
        completion(response)
    except Exception:
        logger.exception("Completion for %s raised", label)


@dataclass
class PendingRequest:
    """A command that was sent and has not been resolved yet"""
    request_id: str
    issued_at: float
    completion: Optional[Completion]
    expect_reply: bool = True
    error_window: Optional[float] = None
    command: str = ""
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)
    resolved: bool = False


class ResponseCorrelator:
    """
    Keeps the request id -> PendingRequest map for one hub session.

    Args:
        loop: the session's event loop
        send_frame: coroutine function that writes one frame to the transport
        name: prefix for log lines, usually the hub address
    """

    def __init__(self, loop: asyncio.AbstractEventLoop,
                 send_frame: Callable[[Dict[str, Any]], Awaitable[None]], name: str = "hub"):
        self._loop = loop
        self._send_frame = send_frame
        self._name = name
        self._pending: Dict[str, PendingRequest] = {}
        self._tasks = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def send(self, frame: Dict[str, Any], completion: Optional[Completion],
             timeout: Optional[float] = None, expect_reply: bool = True,
             error_window: Optional[float] = None) -> str:
        """
        Register a request and schedule its transmission.

        Args:
            frame: command frame; its id is overwritten with a fresh request id
            completion: called exactly once with the Response
            timeout: seconds to wait for the reply before failing with CommandTimeout
            expect_reply: when False the hub only answers to report a problem
            error_window: with expect_reply False, seconds to keep listening for an
                error reply after the frame is written; the request succeeds once
                the window passes quietly (None or 0 succeeds right away)

        Returns:
            The request id
        """
        request_id = str(uuid.uuid4())
        messages.stamp_request_id(frame, request_id)
        pending = PendingRequest(
            request_id=request_id,
            issued_at=time.monotonic(),
            completion=completion,
            expect_reply=expect_reply,
            error_window=error_window,
            command=frame.get("hbus", {}).get("cmd", ""),
        )
        self._pending[request_id] = pending
        if expect_reply and timeout is not None:
            pending.timer = self._loop.call_later(timeout, self._expire, request_id, timeout)

        logger.debug("%s: Sending %s (id %s)", self._name, pending.command, request_id)
        task = self._loop.create_task(self._transmit(pending, frame))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return request_id

    async def _transmit(self, pending: PendingRequest, frame: Dict[str, Any]) -> None:
        try:
            await self._send_frame(frame)
        except Exception as exc:
            error = exc if isinstance(exc, HubError) else HubConnectionError(f"{type(exc).__name__}: {exc}")
            logger.error("%s: Failed to send %s: %s", self._name, pending.command, error)
            self._resolve(pending.request_id, Failure(error))
            return

        if pending.expect_reply or pending.resolved:
            return
        if pending.error_window:
            pending.timer = self._loop.call_later(pending.error_window, self._settle, pending.request_id)
        else:
            self._resolve(pending.request_id, Success(dict(SENT_DOCUMENT)))

    def on_inbound(self, frame: Dict[str, Any]) -> bool:
        """
        Route one reply frame to its request.

        Returns:
            True if the frame matched an outstanding request
        """
        request_id = messages.frame_request_id(frame)
        if request_id is None or request_id not in self._pending:
            error = UnmatchedResponse(request_id)
            logger.error("%s: Dropping stale frame: %s", self._name, error)
            logger.debug("%s: Stale frame content: %s", self._name, frame)
            return False

        if messages.is_progress(frame):
            logger.debug("%s: Request %s in progress: %s", self._name, request_id, frame.get("data"))
            return True

        self._resolve(request_id, messages.frame_to_response(frame))
        return True

    def fail_all(self, error: HubError) -> int:
        """Resolve every outstanding request with Failure(error); returns how many there were"""
        outstanding = list(self._pending)
        for request_id in outstanding:
            self._resolve(request_id, Failure(error))
        if outstanding:
            logger.info("%s: Failed %d pending requests: %s", self._name, len(outstanding), error)
        return len(outstanding)

    def _expire(self, request_id: str, timeout: float) -> None:
        if request_id in self._pending:
            logger.error("%s: Request %s timed out after %.1fs", self._name, request_id, timeout)
            self._resolve(request_id, Failure(CommandTimeout(request_id, timeout)))

    def _settle(self, request_id: str) -> None:
        # no complaint from the hub within the error window
        if request_id in self._pending:
            self._resolve(request_id, Success(dict(SENT_DOCUMENT)))

    def _resolve(self, request_id: str, response: Response) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.resolved:
            return
        pending.resolved = True
        if pending.timer is not None:
            pending.timer.cancel()

        elapsed = time.monotonic() - pending.issued_at
        logger.debug("%s: Request %s resolved in %.3fs (ok=%s)", self._name, request_id, elapsed, response.ok)
        deliver(pending.completion, response, f"{pending.command} ({request_id})")

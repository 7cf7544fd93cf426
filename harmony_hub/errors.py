"""
Error taxonomy for the Harmony Hub session engine.

Transport and handshake errors are never raised from public session
operations; they are delivered as Failure responses to pending completions.
"""

from typing import Any, Optional


class HubError(Exception):
    """Base class for every error produced by the hub client"""


class HubConnectionError(HubError, ConnectionError):
    """The hub is unreachable or the connection to it was closed"""


class HandshakeError(HubError):
    """The hub rejected pairing or returned no usable remote id"""


class UnmatchedResponse(HubError):
    """An inbound frame did not match any outstanding request"""

    def __init__(self, request_id: Optional[str]):
        super().__init__(f"No pending request for response id {request_id!r}")
        self.request_id = request_id


class CommandRejected(HubError):
    """The hub answered a command with a non-success code"""

    def __init__(self, code: Any, message: str = ""):
        super().__init__(f"Hub rejected command (code {code}): {message or 'no message'}")
        self.code = code
        self.message = message


class CommandTimeout(HubError, TimeoutError):
    """No response arrived within the per-request deadline"""

    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"No response to request {request_id} within {timeout:.1f}s")
        self.request_id = request_id
        self.timeout = timeout


class QueueOverflow(HubError):
    """A command was issued before the session was ready and the queue is full"""

    def __init__(self, limit: int):
        super().__init__(f"Session not ready and {limit} commands already queued")
        self.limit = limit

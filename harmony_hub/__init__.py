"""
Harmony Hub session client.

    from harmony_hub import HubSession

    session = HubSession("192.168.1.50", observer)
    session.start_activity("32923208", completion=print)
"""

from .config import SessionConfig
from .diagnostics import LogLevel, get_log_level, set_log_level
from .errors import (
    CommandRejected,
    CommandTimeout,
    HandshakeError,
    HubConnectionError,
    HubError,
    QueueOverflow,
    UnmatchedResponse,
)
from .notifier import HubEvent
from .responses import Failure, Response, Success
from .session import HubSession, SessionState
from .transport import HubTransport, WebSocketTransport

__version__ = "1.0.0"

__all__ = [
    "CommandRejected",
    "CommandTimeout",
    "Failure",
    "HandshakeError",
    "HubConnectionError",
    "HubError",
    "HubEvent",
    "HubSession",
    "HubTransport",
    "LogLevel",
    "QueueOverflow",
    "Response",
    "SessionConfig",
    "SessionState",
    "Success",
    "UnmatchedResponse",
    "WebSocketTransport",
    "get_log_level",
    "set_log_level",
]

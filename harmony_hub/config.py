"""
Session configuration.

SessionConfig holds the tunables of one HubSession. The CLI can additionally
read a user ``config.py`` (see config.sample.py) for the hub address.
"""

import importlib
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8088


@dataclass(frozen=True)
class SessionConfig:
    """Tunables for a single hub session"""
    port: int = DEFAULT_PORT
    connect_timeout: float = 1.0
    http_timeout: float = 3.0
    command_timeout: Optional[float] = 10.0
    activity_timeout: Optional[float] = 30.0
    max_queued_commands: int = 16
    refresh_interval: Optional[float] = 300.0
    await_button_replies: bool = False
    button_error_window: float = 0.5
    retry_attempts: int = 3

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> 'SessionConfig':
        """Return a copy with the known keys of ``overrides`` applied, ignoring the rest"""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            logger.warning("Ignoring unknown session settings: %s", ", ".join(sorted(unknown)))
        return replace(self, **{k: v for k, v in overrides.items() if k in known})


@dataclass(frozen=True)
class UserConfig:
    """Values read from the user's config.py"""
    hub_ip: Optional[str] = None
    log_level: Optional[str] = None
    session: SessionConfig = SessionConfig()


def load_user_config(module_name: str = "config") -> UserConfig:
    """
    Load HUB_IP, LOG_LEVEL and SESSION from a user config module.

    A missing module is not an error: the caller may pass everything on the
    command line instead.
    """
    try:
        module = importlib.import_module(module_name)
    except ImportError:
        logger.debug("No '%s' module found, using defaults", module_name)
        return UserConfig()

    return UserConfig(
        hub_ip=getattr(module, "HUB_IP", None),
        log_level=getattr(module, "LOG_LEVEL", None),
        session=SessionConfig().with_overrides(getattr(module, "SESSION", None)),
    )

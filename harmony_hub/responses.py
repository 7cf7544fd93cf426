"""
Response model delivered to command completions.

A Response is either Success (carrying the hub's JSON document) or Failure
(carrying a HubError). Branch on the type before touching the payload.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Union

from .errors import HubError


@dataclass(frozen=True)
class Success:
    """Hub accepted the command; ``document`` is the response payload"""
    document: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """Command did not succeed; ``error`` says why"""
    error: HubError

    @property
    def ok(self) -> bool:
        return False

    def raise_error(self):
        raise self.error


Response = Union[Success, Failure]

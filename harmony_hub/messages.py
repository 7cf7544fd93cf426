"""
Frame builders and parsers for the Harmony Hub websocket API.

Commands are JSON objects of the form::

    {"hubId": <remote id>, "timeout": 30,
     "hbus": {"cmd": <command>, "id": <request id>, "params": {...}}}

Replies echo the request id and carry ``code``/``msg``/``data``. Spontaneous
notifications carry a ``type`` instead of an id.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional

from .errors import CommandRejected, HandshakeError
from .responses import Failure, Response, Success

logger = logging.getLogger(__name__)

ENGINE = "vnd.logitech.harmony/vnd.logitech.harmony.engine"
CMD_START_ACTIVITY = f"{ENGINE}?startactivity"
CMD_HOLD_ACTION = f"{ENGINE}?holdAction"
CMD_GET_CONFIG = f"{ENGINE}?config"
CMD_GET_CURRENT_ACTIVITY = f"{ENGINE}?getCurrentActivity"
CMD_PROVISION_INFO = "setup.account?getProvisionInfo"

NOTIFY_STATE_DIGEST = "connect.stateDigest?notify"
NOTIFY_ACTIVITY_FINISHED = "startActivityFinished"

CODE_OK = 200
CODE_IN_PROGRESS = 100

# activityStatus values in a state digest
ACTIVITY_STATUS_OFF = 0
ACTIVITY_STATUS_STARTED = 2

POWER_OFF_ACTIVITY_ID = "-1"

PROVISION_HEADERS = {
    "Origin": "http://sl.dhg.myharmony.com",
    "Content-Type": "application/json",
    "Accept": "utf-8",
}

BUTTON_PRESS = "press"
BUTTON_HOLD = "hold"
BUTTON_RELEASE = "release"


def build_command(remote_id: int, cmd: str, params: Dict[str, Any], timeout: int = 30) -> Dict[str, Any]:
    """Wrap a hub command in the websocket envelope; the request id is stamped later"""
    return {
        "hubId": remote_id,
        "timeout": timeout,
        "hbus": {
            "cmd": cmd,
            "id": "0",
            "params": params,
        },
    }


def start_activity_command(remote_id: int, activity_id: str) -> Dict[str, Any]:
    return build_command(remote_id, CMD_START_ACTIVITY, {
        "async": "true",
        "timestamp": 0,
        "args": {"rule": "start"},
        "activityId": str(activity_id),
    })


def hold_action_command(remote_id: int, action: str, status: str) -> Dict[str, Any]:
    """Button action frame; status is one of press, hold or release"""
    if status not in (BUTTON_PRESS, BUTTON_HOLD, BUTTON_RELEASE):
        raise ValueError(f"Unknown button status: {status}")
    return build_command(remote_id, CMD_HOLD_ACTION, {
        "status": status,
        "timestamp": "0",
        "verb": "render",
        "action": action,
    }, timeout=10)


def get_config_command(remote_id: int) -> Dict[str, Any]:
    return build_command(remote_id, CMD_GET_CONFIG, {"verb": "get"})


def get_current_activity_command(remote_id: int) -> Dict[str, Any]:
    return build_command(remote_id, CMD_GET_CURRENT_ACTIVITY, {"verb": "get"}, timeout=10)


def provision_request() -> Dict[str, Any]:
    return {"id": 1, "cmd": CMD_PROVISION_INFO, "timeout": 90000}


def stamp_request_id(frame: Dict[str, Any], request_id: str) -> Dict[str, Any]:
    frame["id"] = request_id
    if "hbus" in frame:
        frame["hbus"]["id"] = request_id
    return frame


def frame_request_id(frame: Dict[str, Any]) -> Optional[str]:
    request_id = frame.get("id")
    if request_id is None:
        return None
    return str(request_id)


def _code(frame: Dict[str, Any]) -> Optional[int]:
    try:
        return int(frame.get("code"))
    except (TypeError, ValueError):
        return None


def is_progress(frame: Dict[str, Any]) -> bool:
    """True for interim replies the hub sends while a long command is running"""
    return _code(frame) == CODE_IN_PROGRESS


def is_push(frame: Dict[str, Any]) -> bool:
    """True for notifications the hub sends without being asked"""
    return "type" in frame and frame_request_id(frame) is None


def frame_to_response(frame: Dict[str, Any]) -> Response:
    if _code(frame) == CODE_OK:
        data = frame.get("data")
        return Success(data if isinstance(data, dict) else {"result": data})
    return Failure(CommandRejected(frame.get("code"), str(frame.get("msg", ""))))


def parse_remote_id(response: Any) -> int:
    """
    Extract the remote id from a getProvisionInfo reply.

    Raises:
        HandshakeError: the reply is malformed, not successful or has no id
    """
    if not isinstance(response, dict):
        raise HandshakeError("Provisioning reply is not a JSON object")
    if _code(response) not in (None, CODE_OK):
        raise HandshakeError(f"Hub refused pairing (code {response.get('code')}): {response.get('msg', '')}")

    data = response.get("data")
    if not isinstance(data, dict):
        raise HandshakeError("Provisioning reply missing 'data' field")

    raw = data.get("activeRemoteId", data.get("remoteId"))
    try:
        remote_id = int(raw)
    except (TypeError, ValueError):
        raise HandshakeError(f"Provisioning reply has no usable remote id: {raw!r}") from None
    if remote_id == 0:
        raise HandshakeError("Hub returned remote id 0")
    return remote_id


def device_action(device_id: str, command: str, action_type: str = "IRCommand") -> str:
    """Action string for a device command, as embedded in control groups"""
    return json.dumps({"command": command, "type": action_type, "deviceId": str(device_id)})


def find_button_action(devices: Optional[Iterable[Dict[str, Any]]], device: str, command: str) -> Optional[str]:
    """
    Look up the action string of ``command`` on ``device``.

    Args:
        devices: device records as reported by the hub
        device: device id or label (case insensitive)
        command: function name or label, e.g. "VolumeUp"

    Returns:
        The action string from the device's control groups, or None when the
        device or the command is unknown
    """
    wanted = device.lower()
    command_lower = command.lower()
    for record in devices or ():
        if str(record.get("id")) != device and str(record.get("label", "")).lower() != wanted:
            continue
        for group in record.get("controlGroup", []):
            if not isinstance(group, dict):
                continue
            for func in group.get("function", []):
                if not isinstance(func, dict):
                    continue
                names = (str(func.get("name", "")).lower(), str(func.get("label", "")).lower())
                if command_lower in names and func.get("action"):
                    return func["action"]
        return None
    return None

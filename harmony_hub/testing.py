"""
Test doubles for code that uses HubSession.

FakeTransport stands in for the hub: it answers configuration and status
queries from canned documents, records every frame it is sent, and lets a
test push notifications or drop the connection from any thread.
"""

import asyncio
import copy
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from . import messages
from .errors import HandshakeError, HubConnectionError, HubError
from .transport import HubTransport

DEFAULT_ANSWERS = frozenset({
    messages.CMD_GET_CONFIG,
    messages.CMD_GET_CURRENT_ACTIVITY,
    messages.CMD_START_ACTIVITY,
})


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` seconds pass"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def activity(activity_id: str, label: str = "", **extra) -> Dict[str, Any]:
    record = {"id": str(activity_id), "label": label or f"Activity {activity_id}"}
    record.update(extra)
    return record


def device(device_id: str, label: str, commands: Iterable[str] = ()) -> Dict[str, Any]:
    functions = [
        {"name": name, "label": name, "action": messages.device_action(device_id, name)}
        for name in commands
    ]
    return {
        "id": str(device_id),
        "label": label,
        "controlGroup": [{"name": "Default", "function": functions}] if functions else [],
    }


class FakeTransport(HubTransport):
    """
    In-memory hub.

    Args:
        remote_id: id handed out by the handshake
        activities: activity records returned by the config query
        devices: device records returned by the config query
        current_activity: id returned by getCurrentActivity
        answers: commands that get an automatic reply
        handshake_error: raised from handshake() when set
        send_error: raised from send() when set
        open_error: raised from open() when set
    """

    def __init__(self, remote_id: int = 12345, activities: Optional[List[Dict]] = None,
                 devices: Optional[List[Dict]] = None, current_activity: str = "-1",
                 answers: Iterable[str] = DEFAULT_ANSWERS,
                 handshake_error: Optional[HubError] = None,
                 open_error: Optional[HubError] = None,
                 send_error: Optional[Exception] = None):
        super().__init__()
        self.remote_id = remote_id
        self.activities = activities if activities is not None else [activity("-1", "PowerOff")]
        self.devices = devices if devices is not None else []
        self.current_activity = current_activity
        self.answers = set(answers)
        self.handshake_error = handshake_error
        self.open_error = open_error
        self.send_error = send_error
        # holdAction actions answered with an error reply
        self.rejected_actions: Set[str] = set()

        self.handshake_gate = threading.Event()
        self.handshake_gate.set()
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.sent: List[Dict[str, Any]] = []
        self.channel_remote_id: Optional[int] = None
        self.fail_sends = False
        self.closed = False
        self.close_count = 0

    # HubTransport

    async def open(self) -> None:
        self.loop = asyncio.get_running_loop()
        if self.open_error is not None:
            raise self.open_error

    async def handshake(self) -> int:
        while not self.handshake_gate.is_set():
            await asyncio.sleep(0.005)
        if self.handshake_error is not None:
            raise self.handshake_error
        if not self.remote_id:
            raise HandshakeError("Fake hub has no remote id")
        return self.remote_id

    async def open_channel(self, remote_id: int) -> None:
        self.channel_remote_id = remote_id

    async def send(self, frame: Dict[str, Any]) -> None:
        if self.closed or self.fail_sends:
            raise HubConnectionError("Fake hub is not connected")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(copy.deepcopy(frame))
        cmd = frame.get("hbus", {}).get("cmd")
        if cmd == messages.CMD_HOLD_ACTION and frame["hbus"]["params"].get("action") in self.rejected_actions:
            self._later(self.reply_frame(frame, code=400, msg="Unknown action"))
        elif cmd in self.answers:
            self._answer(frame, cmd)

    async def close(self) -> None:
        self.closed = True
        self.close_count += 1

    # Hub behaviour

    def _answer(self, frame: Dict[str, Any], cmd: str) -> None:
        if cmd == messages.CMD_GET_CONFIG:
            self._later(self.reply_frame(frame, data={"activity": copy.deepcopy(self.activities),
                                                      "device": copy.deepcopy(self.devices)}))
        elif cmd == messages.CMD_GET_CURRENT_ACTIVITY:
            self._later(self.reply_frame(frame, data={"result": self.current_activity}))
        elif cmd == messages.CMD_START_ACTIVITY:
            activity_id = frame["hbus"]["params"]["activityId"]
            if not any(str(a.get("id")) == activity_id for a in self.activities):
                self._later(self.reply_frame(frame, code=400, msg="Unknown activity"))
                return
            self.current_activity = activity_id
            self._later(self.reply_frame(frame, code=100, msg="In progress", data={"done": 1, "total": 2}))
            self._later(self.reply_frame(frame, data={}))
            self._later({"type": "harmony.engine?startActivityFinished",
                         "data": {"activityId": activity_id, "errorCode": "200"}})
        elif cmd == messages.CMD_HOLD_ACTION:
            self._later(self.reply_frame(frame, data={}))

    def _later(self, frame: Dict[str, Any]) -> None:
        self.loop.call_soon(self._deliver_frame, frame)

    @staticmethod
    def reply_frame(request: Dict[str, Any], code: int = 200, msg: str = "OK",
                    data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        reply = {"cmd": request.get("hbus", {}).get("cmd"), "code": code,
                 "id": request["hbus"]["id"], "msg": msg}
        if data is not None:
            reply["data"] = data
        return reply

    # Thread-safe hooks for tests

    def sent_commands(self, cmd: Optional[str] = None) -> List[Dict[str, Any]]:
        frames = list(self.sent)
        if cmd is None:
            return frames
        return [f for f in frames if f.get("hbus", {}).get("cmd") == cmd]

    def inject(self, frame: Dict[str, Any]) -> None:
        """Deliver any inbound frame as if the hub sent it"""
        self.loop.call_soon_threadsafe(self._deliver_frame, frame)

    def reply(self, request: Dict[str, Any], code: int = 200, msg: str = "OK",
              data: Optional[Dict[str, Any]] = None) -> None:
        self.inject(self.reply_frame(request, code=code, msg=msg, data=data))

    def push_current_activity(self, activity_id: str, config_version: Any = None) -> None:
        data = {"activityId": str(activity_id), "activityStatus": messages.ACTIVITY_STATUS_STARTED}
        if config_version is not None:
            data["configVersion"] = config_version
        self.inject({"type": messages.NOTIFY_STATE_DIGEST, "data": data})

    def drop_connection(self, error: Optional[HubError] = None) -> None:
        error = error or HubConnectionError("Simulated connection loss")
        self.loop.call_soon_threadsafe(self._report_fault, error)

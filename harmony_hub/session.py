"""
HubSession - the façade over one Harmony Hub.

A session connects, pairs, keeps the activity list, device list and current
activity up to date, and sends commands. Nothing here blocks the caller: each
command returns immediately with a concurrent.futures.Future and, optionally,
calls a completion with the Response.

All engine state (correlator, store, queue) lives on a single event loop.
Pass ``loop`` to share an already running loop, otherwise the session runs its
own loop in a daemon thread.
"""

import asyncio
import concurrent.futures
import functools
import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from . import messages
from .config import SessionConfig
from .correlator import Completion, ResponseCorrelator, deliver
from .errors import HubConnectionError, HubError, QueueOverflow
from .notifier import ChangeNotifier, HubEvent
from .responses import Failure, Response, Success
from .state_store import StateStore
from .transport import HubTransport, WebSocketTransport

logger = logging.getLogger(__name__)

FrameBuilder = Callable[[int], Dict[str, Any]]


class SessionState(Enum):
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class QueuedCommand:
    """A command waiting for the session to become ready"""
    label: str
    build: FrameBuilder
    completion: Completion
    timeout: Optional[float]
    expect_reply: bool
    error_window: Optional[float] = None


class HubSession:
    """
    Client session for a single Harmony Hub.

    Args:
        ip4_address: address of the hub on the local network
        observer: optional object implementing any of on_activities_changed,
            on_current_activity_changed, on_devices_changed, on_connection_lost
        config: session tunables
        transport: transport to use instead of a WebSocketTransport
        loop: running event loop to live on instead of a private one
    """

    def __init__(self, ip4_address: str, observer: Any = None, *,
                 config: Optional[SessionConfig] = None,
                 transport: Optional[HubTransport] = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self._ip4_address = ip4_address
        self._config = config or SessionConfig()
        self._transport = transport or WebSocketTransport(ip4_address, self._config)

        self._state = SessionState.CONNECTING
        self._remote_id = 0
        self._last_error: Optional[HubError] = None
        self._current_activity_id: Optional[str] = None
        self._config_version: Optional[Any] = None
        self._queued: Deque[QueuedCommand] = deque()
        self._run_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._refreshing: Optional[asyncio.Task] = None
        self._close_future: Optional[concurrent.futures.Future] = None
        self._close_lock = threading.Lock()

        self._notifier = ChangeNotifier(source=self)
        self._notifier.attach_observer(observer)
        self._store = StateStore(self._notifier)

        self._owns_loop = loop is None
        self._thread: Optional[threading.Thread] = None
        if self._owns_loop:
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(target=self._run_loop, name=f"harmony-hub-{ip4_address}",
                                            daemon=True)
        else:
            self._loop = loop

        self._correlator = ResponseCorrelator(self._loop, self._transport.send, name=ip4_address)

        logger.debug("%s: Creating session", ip4_address)
        if self._thread is not None:
            self._thread.start()
        self._loop.call_soon_threadsafe(self._start)

    def __repr__(self):
        return f"{type(self).__name__}({self._ip4_address!r}, state={self._state.value}, remote_id={self._remote_id})"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        future = self.close()
        if not self._on_loop_thread():
            future.result(timeout=10)

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    # State accessors

    @property
    def ip4_address(self) -> str:
        return self._ip4_address

    @property
    def remote_id(self) -> int:
        """0 means we don't have one yet"""
        return self._remote_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def last_error(self) -> Optional[HubError]:
        return self._last_error

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def activities(self) -> Optional[List[Dict[str, Any]]]:
        """None means we don't have them yet"""
        return self._store.activities

    @property
    def current_activity(self) -> Optional[Dict[str, Any]]:
        """None means we don't have it yet"""
        return self._store.current_activity

    @property
    def devices(self) -> Optional[List[Dict[str, Any]]]:
        """None means we don't have them yet"""
        return self._store.devices

    def subscribe(self, event: HubEvent, listener: Callable[[Any, Any], None]) -> Callable[[], None]:
        """
        Add a listener for ``event``; it is called as listener(session, old_value).

        Subscribe before the session becomes ready (or from the loop thread) to
        be sure not to miss the first population of a document.
        """
        return self._notifier.subscribe(event, listener)

    # Commands

    def start_activity(self, activity_id: str, completion: Optional[Completion] = None) -> concurrent.futures.Future:
        """Start an activity; "-1" powers everything off"""
        build = functools.partial(messages.start_activity_command, activity_id=str(activity_id))
        return self._submit(f"startActivity {activity_id}", build, completion,
                            self._config.activity_timeout, expect_reply=True)

    def request_button_press_action(self, action: str, completion: Optional[Completion] = None) -> concurrent.futures.Future:
        return self._button(action, messages.BUTTON_PRESS, completion)

    def request_button_hold_action(self, action: str, completion: Optional[Completion] = None) -> concurrent.futures.Future:
        """Begin continuous actuation; the caller is responsible for the release"""
        return self._button(action, messages.BUTTON_HOLD, completion)

    def request_button_release_action(self, action: str, completion: Optional[Completion] = None) -> concurrent.futures.Future:
        return self._button(action, messages.BUTTON_RELEASE, completion)

    def refresh(self) -> concurrent.futures.Future:
        """Re-read configuration and current activity from the hub"""
        return self._call_on_loop(self._refresh_state)

    def close(self) -> concurrent.futures.Future:
        """
        Tear the session down.

        Pending and queued commands fail with HubConnectionError. The returned
        future completes once the transport is closed; do not wait on it from
        a completion or listener. Calling it again returns the same future.
        """
        with self._close_lock:
            if self._close_future is None:
                future = self._call_on_loop(self._close)
                if self._owns_loop and not future.done():
                    future.add_done_callback(lambda _: self._stop_loop())
                self._close_future = future
            return self._close_future

    # Internals: submission from any thread

    def _button(self, action: str, status: str, completion: Optional[Completion]) -> concurrent.futures.Future:
        build = functools.partial(messages.hold_action_command, action=action, status=status)
        if self._config.await_button_replies:
            return self._submit(f"{status} {action}", build, completion, self._config.command_timeout,
                                expect_reply=True)
        # the hub only answers a button action to report a problem with it
        return self._submit(f"{status} {action}", build, completion, self._config.command_timeout,
                            expect_reply=False, error_window=self._config.button_error_window)

    def _submit(self, label: str, build: FrameBuilder, completion: Optional[Completion],
                timeout: Optional[float], expect_reply: bool,
                error_window: Optional[float] = None) -> concurrent.futures.Future:
        future: concurrent.futures.Future = concurrent.futures.Future()

        def resolve(response: Response):
            if not future.done():
                future.set_result(response)
            deliver(completion, response, label)

        command = QueuedCommand(label, build, resolve, timeout, expect_reply, error_window)
        try:
            self._loop.call_soon_threadsafe(self._dispatch, command)
        except RuntimeError:
            # loop already closed: the session is gone
            resolve(Failure(self._closed_error()))
        return future

    def _call_on_loop(self, coro_func) -> concurrent.futures.Future:
        if not self._loop.is_closed():
            coro = coro_func()
            try:
                return asyncio.run_coroutine_threadsafe(coro, self._loop)
            except RuntimeError:
                # the loop closed under us
                coro.close()
        future: concurrent.futures.Future = concurrent.futures.Future()
        future.set_result(None)
        return future

    # Internals: everything below runs on the loop

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            pending = [t for t in asyncio.all_tasks(self._loop) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()
            logger.debug("%s: Event loop stopped", self._ip4_address)

    def _stop_loop(self):
        try:
            self._loop.call_soon_threadsafe(self._loop.stop)
        except RuntimeError:
            pass

    def _start(self):
        if self._state is not SessionState.CLOSED:
            self._run_task = self._loop.create_task(self._run())

    def _set_state(self, state: SessionState):
        if state is not self._state:
            logger.info("%s: %s -> %s", self._ip4_address, self._state.value, state.value)
            self._state = state

    def _closed_error(self) -> HubError:
        return self._last_error or HubConnectionError("Session closed")

    async def _run(self):
        self._transport.on_frame = self._on_frame
        self._transport.on_fault = self._on_fault
        try:
            await self._transport.open()
            self._set_state(SessionState.HANDSHAKING)
            remote_id = await self._transport.handshake()
            self._set_remote_id(remote_id)
            await self._transport.open_channel(remote_id)
        except Exception as e:
            error = e if isinstance(e, HubError) else HubConnectionError(f"{type(e).__name__}: {e}")
            logger.error("%s: Unable to connect: %s", self._ip4_address, error)
            await self._teardown(error, connection_lost=True)
            return

        if self._state is SessionState.CLOSED:
            return
        self._set_state(SessionState.READY)
        logger.info("%s: Connected with remote id %s", self._ip4_address, self._remote_id)

        while self._queued:
            self._send(self._queued.popleft())

        await self._refresh_state()
        if self._config.refresh_interval and self._state is SessionState.READY:
            self._refresh_task = self._loop.create_task(self._refresh_periodically(self._config.refresh_interval))

    def _set_remote_id(self, remote_id: int):
        if self._remote_id == 0:
            self._remote_id = remote_id
        elif self._remote_id != remote_id:
            logger.error("%s: Ignoring new remote id %s, keeping %s", self._ip4_address, remote_id, self._remote_id)

    def _dispatch(self, command: QueuedCommand):
        if self._state is SessionState.READY:
            self._send(command)
        elif self._state is SessionState.CLOSED:
            deliver(command.completion, Failure(self._closed_error()), command.label)
        elif len(self._queued) >= self._config.max_queued_commands:
            logger.error("%s: Queue full, rejecting %s", self._ip4_address, command.label)
            deliver(command.completion, Failure(QueueOverflow(self._config.max_queued_commands)), command.label)
        else:
            logger.debug("%s: Not ready, queueing %s", self._ip4_address, command.label)
            self._queued.append(command)

    def _send(self, command: QueuedCommand):
        self._correlator.send(command.build(self._remote_id), command.completion,
                              timeout=command.timeout, expect_reply=command.expect_reply,
                              error_window=command.error_window)

    async def _query(self, build: FrameBuilder) -> Response:
        if self._state is not SessionState.READY:
            return Failure(self._closed_error())
        future = self._loop.create_future()

        def resolve(response: Response):
            if not future.done():
                future.set_result(response)

        self._correlator.send(build(self._remote_id), resolve, timeout=self._config.command_timeout)
        return await future

    async def _refresh_state(self):
        config = await self._query(messages.get_config_command)
        if isinstance(config, Success):
            self._apply_config(config.document)
        else:
            logger.error("%s: Unable to read hub configuration: %s", self._ip4_address, config.error)

        current = await self._query(messages.get_current_activity_command)
        if isinstance(current, Success):
            self._apply_current_activity(current.document.get("result"))
        else:
            logger.error("%s: Unable to read current activity: %s", self._ip4_address, current.error)

    async def _refresh_periodically(self, interval: float):
        while self._state is SessionState.READY:
            await asyncio.sleep(interval)
            logger.debug("%s: Periodic refresh", self._ip4_address)
            await self._refresh_state()

    def _trigger_refresh(self):
        if self._refreshing is None or self._refreshing.done():
            self._refreshing = self._loop.create_task(self._refresh_state())

    def _apply_config(self, data: Dict[str, Any]):
        activities = data.get("activity")
        devices = data.get("device")
        if isinstance(activities, list):
            self._store.update(HubEvent.ACTIVITIES, activities)
        if isinstance(devices, list):
            self._store.update(HubEvent.DEVICES, devices)
        if self._current_activity_id is not None:
            # the record for the running activity may have changed with the list
            self._apply_current_activity(self._current_activity_id)

    def _apply_current_activity(self, activity_id: Any):
        if activity_id is None:
            return
        activity_id = str(activity_id)
        self._current_activity_id = activity_id
        record = next((a for a in self._store.activities or () if str(a.get("id")) == activity_id),
                      {"id": activity_id})
        self._store.update(HubEvent.CURRENT_ACTIVITY, record)

    def _on_frame(self, frame: Dict[str, Any]):
        if messages.is_push(frame):
            if self._state is SessionState.READY:
                self._on_push(frame)
            else:
                logger.debug("%s: Ignoring push before ready: %s", self._ip4_address, frame.get("type"))
            return
        self._correlator.on_inbound(frame)

    def _on_push(self, frame: Dict[str, Any]):
        kind = str(frame.get("type", ""))
        data = frame.get("data")
        if not isinstance(data, dict):
            data = {}

        if kind.endswith(messages.NOTIFY_ACTIVITY_FINISHED):
            logger.debug("%s: Activity %s finished starting", self._ip4_address, data.get("activityId"))
            self._apply_current_activity(data.get("activityId"))
        elif kind == messages.NOTIFY_STATE_DIGEST:
            status = data.get("activityStatus")
            if status == messages.ACTIVITY_STATUS_STARTED:
                self._apply_current_activity(data.get("activityId"))
            elif status == messages.ACTIVITY_STATUS_OFF:
                self._apply_current_activity(messages.POWER_OFF_ACTIVITY_ID)

            version = data.get("configVersion")
            if version is not None:
                if self._config_version is not None and version != self._config_version:
                    logger.info("%s: Hub configuration changed (%s -> %s)", self._ip4_address,
                                self._config_version, version)
                    self._trigger_refresh()
                self._config_version = version
        else:
            logger.debug("%s: Ignoring notification %s", self._ip4_address, kind)

    def _on_fault(self, error: HubError):
        logger.error("%s: Connection lost: %s", self._ip4_address, error)
        self._loop.create_task(self._teardown(error, connection_lost=True))

    async def _close(self):
        await self._teardown(HubConnectionError("Session closed"), connection_lost=False)

    async def _teardown(self, error: HubError, connection_lost: bool):
        if self._state is SessionState.CLOSED:
            return
        self._set_state(SessionState.CLOSED)
        self._last_error = error

        current = asyncio.current_task()
        for task in (self._run_task, self._refresh_task, self._refreshing):
            if task is not None and task is not current and not task.done():
                task.cancel()

        queued, self._queued = list(self._queued), deque()
        for command in queued:
            deliver(command.completion, Failure(error), command.label)
        self._correlator.fail_all(error)

        try:
            await self._transport.close()
        except (HubError, OSError) as e:
            logger.debug("%s: Error while closing transport: %s", self._ip4_address, e)

        if connection_lost:
            self._notifier.notify(HubEvent.CONNECTION_LOST, error)
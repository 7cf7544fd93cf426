#!/usr/bin/env python3
"""
Tests for the aiohttp websocket transport
A small aiohttp application plays the hub: POST / pairs, GET / upgrades to the command channel.
"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
from aiohttp import web
from aiohttp import test_utils

from harmony_hub import messages
from harmony_hub.config import SessionConfig
from harmony_hub.errors import HandshakeError, HubConnectionError
from harmony_hub.session import HubSession, SessionState
from harmony_hub.transport import WebSocketTransport, network_retry

ACTIVITIES = [{"id": "-1", "label": "PowerOff"}, {"id": "7", "label": "Watch TV"}]


class HubServer:
    """Scripted stand-in for the hub's local HTTP and websocket API"""

    def __init__(self, remote_id=424242, provision_status=200, garbage_before_reply=False):
        self.remote_id = remote_id
        self.provision_status = provision_status
        self.garbage_before_reply = garbage_before_reply
        self.provision_headers = {}
        self.provision_bodies = []
        self.hub_ids = []
        self.received = []
        self.sockets = []
        self.app = web.Application()
        self.app.router.add_post("/", self.provision)
        self.app.router.add_get("/", self.websocket)
        self.server = test_utils.TestServer(self.app, host="127.0.0.1")

    async def __aenter__(self):
        await self.server.start_server()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.server.close()

    @property
    def port(self):
        return self.server.port

    def config(self, **overrides):
        return SessionConfig(port=self.port, refresh_interval=None, **overrides)

    async def provision(self, request):
        self.provision_headers = dict(request.headers)
        self.provision_bodies.append(await request.json())
        if self.provision_status != 200:
            return web.Response(status=self.provision_status, text="nope")
        return web.json_response({
            "cmd": messages.CMD_PROVISION_INFO,
            "code": 200,
            "msg": "OK",
            "data": {"activeRemoteId": self.remote_id, "email": "someone@example.com"},
        })

    async def websocket(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.hub_ids.append(request.query.get("hubId"))
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                frame = json.loads(msg.data)
                self.received.append(frame)
                await self.answer(ws, frame)
        return ws

    async def answer(self, ws, frame):
        cmd = frame["hbus"]["cmd"]
        reply = {"cmd": cmd, "id": frame["hbus"]["id"], "code": 200, "msg": "OK"}
        if cmd == messages.CMD_GET_CONFIG:
            reply["data"] = {"activity": ACTIVITIES, "device": []}
        elif cmd == messages.CMD_GET_CURRENT_ACTIVITY:
            reply["data"] = {"result": "7"}
        else:
            return
        if self.garbage_before_reply:
            await ws.send_str("{not json")
            await ws.send_str("[1, 2, 3]")
        await ws.send_str(json.dumps(reply))

    async def drop_all(self):
        for ws in self.sockets:
            await ws.close()


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def run(coro):
    return asyncio.run(asyncio.wait_for(coro, timeout=10))


async def connected_transport(server, **overrides):
    transport = WebSocketTransport("127.0.0.1", server.config(**overrides))
    frames, faults = [], []
    transport.on_frame = frames.append
    transport.on_fault = faults.append
    await transport.open()
    remote_id = await transport.handshake()
    await transport.open_channel(remote_id)
    return transport, frames, faults


class TestHandshake:

    def test_handshake_returns_remote_id(self):
        async def scenario():
            async with HubServer(remote_id=11223344) as server:
                transport = WebSocketTransport("127.0.0.1", server.config())
                await transport.open()
                try:
                    remote_id = await transport.handshake()
                finally:
                    await transport.close()
                return remote_id, server

        remote_id, server = run(scenario())
        assert remote_id == 11223344
        assert server.provision_headers["Origin"] == "http://sl.dhg.myharmony.com"
        assert server.provision_bodies[0]["cmd"] == messages.CMD_PROVISION_INFO

    @pytest.mark.parametrize("server_kwargs", [{"provision_status": 403}, {"remote_id": 0}])
    def test_refused_pairing(self, server_kwargs):
        async def scenario():
            async with HubServer(**server_kwargs) as server:
                transport = WebSocketTransport("127.0.0.1", server.config())
                try:
                    with pytest.raises(HandshakeError):
                        await transport.handshake()
                finally:
                    await transport.close()

        run(scenario())

    def test_unreachable_hub(self):
        async def scenario():
            config = SessionConfig(port=test_utils.unused_port(), retry_attempts=1, connect_timeout=0.5)
            transport = WebSocketTransport("127.0.0.1", config)
            try:
                with pytest.raises(HubConnectionError):
                    await transport.handshake()
            finally:
                await transport.close()

        run(scenario())


class TestChannel:

    def test_reply_is_delivered(self):
        async def scenario():
            async with HubServer() as server:
                transport, frames, faults = await connected_transport(server)
                try:
                    assert transport.connected
                    frame = messages.stamp_request_id(messages.get_current_activity_command(424242), "req-1")
                    await transport.send(frame)
                    await wait_until(lambda: frames)
                finally:
                    await transport.close()
                return frames, faults, server

        frames, faults, server = run(scenario())
        assert server.hub_ids == ["424242"]
        assert server.received[0]["hbus"]["cmd"] == messages.CMD_GET_CURRENT_ACTIVITY
        assert frames == [{"cmd": messages.CMD_GET_CURRENT_ACTIVITY, "id": "req-1", "code": 200,
                           "msg": "OK", "data": {"result": "7"}}]
        assert faults == []

    def test_malformed_frames_are_dropped(self):
        async def scenario():
            async with HubServer(garbage_before_reply=True) as server:
                transport, frames, faults = await connected_transport(server)
                try:
                    await transport.send(messages.stamp_request_id(messages.get_config_command(424242), "req-2"))
                    await wait_until(lambda: frames)
                    await asyncio.sleep(0.05)
                finally:
                    await transport.close()
                return frames, faults

        frames, faults = run(scenario())
        assert [f["id"] for f in frames] == ["req-2"]
        assert faults == []

    def test_server_close_reports_one_fault(self):
        async def scenario():
            async with HubServer() as server:
                transport, frames, faults = await connected_transport(server)
                try:
                    await server.drop_all()
                    await wait_until(lambda: faults)
                    await asyncio.sleep(0.05)
                    with pytest.raises(HubConnectionError):
                        await transport.send(messages.get_config_command(424242))
                finally:
                    await transport.close()
                return faults

        faults = run(scenario())
        assert len(faults) == 1
        assert isinstance(faults[0], HubConnectionError)

    def test_close_is_quiet_and_idempotent(self):
        async def scenario():
            async with HubServer() as server:
                transport, frames, faults = await connected_transport(server)
                await transport.close()
                await transport.close()
                await asyncio.sleep(0.05)
                return transport, faults

        transport, faults = run(scenario())
        assert faults == []
        assert not transport.connected
        assert transport.session is None

    def test_send_before_channel_raises(self):
        async def scenario():
            transport = WebSocketTransport("127.0.0.1")
            with pytest.raises(HubConnectionError):
                await transport.send(messages.get_config_command(1))

        run(scenario())

    def test_channel_url(self):
        transport = WebSocketTransport("192.168.1.50")
        assert transport.base_url == "http://192.168.1.50:8088"
        assert transport.channel_url(123) == "http://192.168.1.50:8088/?domain=svcs.myharmony.com&hubId=123"


class Flaky:
    """Fails with a network error a given number of times"""

    def __init__(self, failures, error=None, retry_attempts=3):
        self.failures = failures
        self.error = error or aiohttp.ClientConnectionError("refused")
        self.retry_attempts = retry_attempts
        self.calls = 0

    @network_retry(max_attempts=5, base_delay=0.5, max_delay=1.0)
    async def call(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestNetworkRetry:

    @patch("harmony_hub.transport.asyncio.sleep", new_callable=AsyncMock)
    def test_recovers_after_transient_errors(self, mock_sleep):
        flaky = Flaky(failures=2)
        assert asyncio.run(flaky.call()) == "ok"
        assert flaky.calls == 3
        delays = [c.args[0] for c in mock_sleep.await_args_list]
        assert len(delays) == 2
        assert 0.5 <= delays[0] <= 0.55
        assert 1.0 <= delays[1] <= 1.1

    @patch("harmony_hub.transport.asyncio.sleep", new_callable=AsyncMock)
    def test_instance_attempts_override_decorator(self, mock_sleep):
        flaky = Flaky(failures=10, retry_attempts=2)
        with pytest.raises(aiohttp.ClientConnectionError):
            asyncio.run(flaky.call())
        assert flaky.calls == 2

    @patch("harmony_hub.transport.asyncio.sleep", new_callable=AsyncMock)
    def test_other_errors_are_not_retried(self, mock_sleep):
        flaky = Flaky(failures=1, error=HandshakeError("bad reply"))
        with pytest.raises(HandshakeError):
            asyncio.run(flaky.call())
        assert flaky.calls == 1
        mock_sleep.assert_not_awaited()


class TestSessionOverWebSocket:

    def test_session_syncs_with_hub(self):
        async def scenario():
            async with HubServer() as server:
                hub = HubSession("127.0.0.1", config=server.config(), loop=asyncio.get_running_loop())
                await wait_until(lambda: hub.current_activity is not None, timeout=5)
                state = hub.state
                await asyncio.wrap_future(hub.close())
                return hub, state, server

        hub, state, server = run(scenario())
        assert state is SessionState.READY
        assert hub.remote_id == 424242
        assert hub.activities == ACTIVITIES
        assert hub.current_activity == ACTIVITIES[1]
        assert server.hub_ids == ["424242"]
        assert all(f["hubId"] == 424242 for f in server.received)

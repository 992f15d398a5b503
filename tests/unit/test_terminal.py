"""交互式终端中继测试"""

import asyncio
import base64
import json

import pytest

from services.terminal import TerminalRelay


def _input(data: bytes) -> str:
    return json.dumps({"type": "input", "data": base64.b64encode(data).decode()})


def _output(message: dict) -> bytes:
    assert message["type"] == "output"
    return base64.b64decode(message["data"])


@pytest.fixture
def relay(connections):
    return TerminalRelay(connections, term="xterm", cols=100, rows=30)


@pytest.mark.asyncio
async def test_two_sessions_share_one_connection(relay, websocket, connections, ssh_factory, make_host):
    host = await make_host()
    ws1, ws2 = websocket(), websocket()

    t1 = asyncio.create_task(relay.handle(ws1, host.id))
    t2 = asyncio.create_task(relay.handle(ws2, host.id))
    hello1 = await ws1.next_message()
    hello2 = await ws2.next_message()

    assert hello1["type"] == hello2["type"] == "session"
    assert hello1["sessionId"] != hello2["sessionId"]
    assert hello1["sessionId"].startswith(f"{host.id}-")
    assert set(relay.sessions) == {hello1["sessionId"], hello2["sessionId"]}
    assert len(ssh_factory.clients) == 1
    client = ssh_factory.clients[0]
    assert len(client.processes) == 2
    assert client.processes[0].term == ("xterm", 100, 30)

    ws1.feed(_input(b"ls\n"))
    ws2.feed(_input(b"pwd\n"))

    assert _output(await ws1.next_message()) == b"ls\n"
    assert _output(await ws2.next_message()) == b"pwd\n"
    assert sorted(ch.sent for ch in client.processes) == [[b"ls\n"], [b"pwd\n"]]

    ws1.disconnect()
    await asyncio.wait_for(t1, 5)
    assert list(relay.sessions) == [hello2["sessionId"]]

    ws2.disconnect()
    await asyncio.wait_for(t2, 5)
    assert relay.sessions == {}
    assert all(ch.closed for ch in client.processes)
    assert ws1.closed and ws2.closed
    assert connections.get_cached(host.id) is client
    assert not client.closed


@pytest.mark.asyncio
async def test_remote_shell_exit_closes_client(relay, websocket, ssh_factory, make_host):
    host = await make_host()
    ws = websocket()

    task = asyncio.create_task(relay.handle(ws, host.id))
    await ws.next_message()
    ssh_factory.clients[0].processes[0].remote_exit()
    await asyncio.wait_for(task, 5)

    assert ws.closed
    assert relay.sessions == {}


@pytest.mark.asyncio
async def test_resize_and_malformed_messages(relay, websocket, ssh_factory, make_host):
    host = await make_host()
    ws = websocket()

    task = asyncio.create_task(relay.handle(ws, host.id))
    await ws.next_message()
    process = ssh_factory.clients[0].processes[0]

    ws.feed("not json")
    ws.feed(json.dumps({"type": "input", "data": "%%% not base64 %%%"}))
    ws.feed(json.dumps({"type": "resize", "cols": "wide", "rows": 10}))
    ws.feed(json.dumps({"type": "resize", "cols": 132, "rows": 43}))
    ws.feed(_input(b"x"))

    assert _output(await ws.next_message()) == b"x"
    assert process.resized == [(132, 43)]
    assert process.sent == [b"x"]

    ws.disconnect()
    await asyncio.wait_for(task, 5)


@pytest.mark.asyncio
async def test_failed_resize_keeps_session_alive(relay, websocket, ssh_factory, make_host):
    host = await make_host()
    ws = websocket()

    task = asyncio.create_task(relay.handle(ws, host.id))
    await ws.next_message()
    process = ssh_factory.clients[0].processes[0]
    process.resize_error = OSError("window-change rejected")

    ws.feed(json.dumps({"type": "resize", "cols": 10, "rows": 10}))
    ws.feed(_input(b"still alive"))

    assert _output(await ws.next_message()) == b"still alive"
    ws.disconnect()
    await asyncio.wait_for(task, 5)


@pytest.mark.asyncio
async def test_connect_failure_sends_error(relay, websocket, ssh_factory, make_host, auth_failure):
    host = await make_host()
    ssh_factory.connect_error = auth_failure
    ws = websocket()

    await asyncio.wait_for(relay.handle(ws, host.id), 5)

    assert ws.sent[0]["type"] == "error"
    assert "Authentication failed" in ws.sent[0]["message"]
    assert ws.closed
    assert relay.sessions == {}


@pytest.mark.asyncio
async def test_close_all(relay, websocket, make_host):
    host = await make_host()
    ws = websocket()

    task = asyncio.create_task(relay.handle(ws, host.id))
    await ws.next_message()

    await relay.close_all()
    await asyncio.wait_for(task, 5)

    assert relay.sessions == {}
    assert ws.closed


@pytest.mark.asyncio
async def test_shell_write_failure_sends_error(relay, websocket, ssh_factory, make_host):
    host = await make_host()
    ws = websocket()

    task = asyncio.create_task(relay.handle(ws, host.id))
    await ws.next_message()
    process = ssh_factory.clients[0].processes[0]
    process.write_error = BrokenPipeError("channel closed")

    ws.feed(_input(b"ls\n"))
    await asyncio.wait_for(task, 5)

    assert ws.sent[-1]["type"] == "error"
    assert "channel closed" in ws.sent[-1]["message"]
    assert process.closed
    assert relay.sessions == {}

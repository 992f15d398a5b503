"""测试配置与公共 fixture

远程主机在 asyncssh 边界被替换：FakeSSHFactory 顶替 asyncssh.connect，
FakeSSHConnection.run 按 FakeSSHFactory.responses 返回结果，create_process 返回回显 shell。
"""

import asyncio
import os
import stat
import textwrap
from types import SimpleNamespace
from typing import Optional

import asyncssh
import pytest

from fastapi import WebSocketDisconnect

from models.host import AuthType
from services.connection import ConnectionManager
from services.storage import Datastore, FileStore
from services.vault import CredentialVault


# ──────────────────────────────────────────────
# asyncssh 替身
# ──────────────────────────────────────────────

class FakeShellStdout:
    def __init__(self):
        self._buffer: asyncio.Queue = asyncio.Queue()

    async def read(self, n=-1):
        return await self._buffer.get()

    def put(self, data: bytes):
        self._buffer.put_nowait(data)


class FakeShellStdin:
    def __init__(self, process: "FakeShellProcess"):
        self._process = process

    def write(self, data):
        if self._process.write_error is not None:
            raise self._process.write_error
        self._process.sent.append(data)
        self._process.stdout.put(data)

    async def drain(self):
        pass


class FakeShellProcess:
    """交互式 shell：写入 stdin 的内容原样回显到 stdout"""

    def __init__(self, term_type, term_size):
        self.term = (term_type, *term_size)
        self.stdout = FakeShellStdout()
        self.stdin = FakeShellStdin(self)
        self.sent: list[bytes] = []
        self.resized: list[tuple[int, int]] = []
        self.write_error: Optional[BaseException] = None
        self.resize_error: Optional[BaseException] = None
        self.closed = False

    def change_terminal_size(self, width, height):
        if self.resize_error is not None:
            raise self.resize_error
        self.resized.append((width, height))

    def remote_exit(self):
        """模拟远端 shell 退出"""
        self.stdout.put(b"")

    def close(self):
        if not self.closed:
            self.closed = True
            self.stdout.put(b"")


class FakeSSHConnection:
    def __init__(self, factory: "FakeSSHFactory", connect_kwargs: dict):
        self._factory = factory
        self.connect_kwargs = connect_kwargs
        self.commands: list[str] = []
        self.processes: list[FakeShellProcess] = []
        self.dropped = False
        self.closed = False

    def is_closed(self):
        return self.closed or self.dropped

    async def run(self, command, check=False, encoding="utf-8"):
        self.commands.append(command)
        if self._factory.exec_error is not None:
            raise self._factory.exec_error
        out, err, code = self._factory.respond(command)
        if encoding is None:
            out, err = out.encode("utf-8"), err.encode("utf-8")
        return SimpleNamespace(stdout=out, stderr=err, exit_status=code)

    async def create_process(self, term_type=None, term_size=(80, 24), encoding="utf-8"):
        process = FakeShellProcess(term_type, term_size)
        self.processes.append(process)
        return process

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class FakeSSHFactory:
    """ConnectionManager 的 connect_func，记录所有建立过的连接"""

    def __init__(self):
        self.clients: list[FakeSSHConnection] = []
        self.attempts: list[dict] = []
        self.connect_error: Optional[BaseException] = None
        self.exec_error: Optional[BaseException] = None
        # 命令子串 → (stdout, stderr, exit_code)
        self.responses: dict[str, tuple[str, str, int]] = {}

    async def __call__(self, **kwargs):
        self.attempts.append(kwargs)
        # 让出事件循环，模拟握手耗时
        await asyncio.sleep(0)
        if self.connect_error is not None:
            raise self.connect_error
        conn = FakeSSHConnection(self, kwargs)
        self.clients.append(conn)
        return conn

    def respond(self, command: str) -> tuple[str, str, int]:
        for fragment, result in self.responses.items():
            if fragment in command:
                return result
        if command.startswith("echo "):
            return command[len("echo "):] + "\n", "", 0
        return "", "", 0


class FakeWebSocket:
    """终端客户端替身：feed() 模拟客户端消息，next_message() 读取中继发出的消息"""

    def __init__(self):
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._outbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    async def receive_text(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise WebSocketDisconnect()
        return item

    async def send_json(self, data):
        if self.closed:
            raise RuntimeError("websocket closed")
        self.sent.append(data)
        self._outbox.put_nowait(data)

    async def close(self):
        self.closed = True

    def feed(self, text: str):
        self._inbox.put_nowait(text)

    def disconnect(self):
        self._inbox.put_nowait(None)

    async def next_message(self, timeout: float = 5) -> dict:
        return await asyncio.wait_for(self._outbox.get(), timeout)


# ──────────────────────────────────────────────
# fixture
# ──────────────────────────────────────────────

@pytest.fixture
def datastore(tmp_path):
    return Datastore(FileStore(str(tmp_path / "data")))


@pytest.fixture
def vault():
    return CredentialVault("unit-test-secret")


@pytest.fixture
def ssh_factory():
    return FakeSSHFactory()


@pytest.fixture
def connections(datastore, vault, ssh_factory):
    return ConnectionManager(datastore, vault, connect_timeout=1, test_timeout=1, connect_func=ssh_factory)


@pytest.fixture
def make_host(datastore, vault):
    """返回协程函数：按明文凭据创建一台主机"""

    async def _make(name="web-1", hostname="10.0.0.1", secret="s3cret",
                    auth_type=AuthType.PASSWORD, tags=(), port=22, username="root"):
        return await datastore.create_host(
            name=name,
            hostname=hostname,
            port=port,
            username=username,
            auth_type=auth_type,
            auth_data=vault.encrypt(secret),
            tags=list(tags),
        )

    return _make


@pytest.fixture
def fake_playbook_binary(tmp_path):
    """
    ansible-playbook 替身脚本：打印参数和 inventory，
    FAKE_SLEEP 控制运行时长，FAKE_EXIT 控制退出码。
    """
    path = tmp_path / "fake-ansible-playbook"
    path.write_text(textwrap.dedent("""\
        #!/bin/sh
        if [ "$1" = "--version" ]; then
            echo "ansible-playbook [core 2.15.3]"
            exit 0
        fi
        echo "PLAY [all]"
        echo "ARGS: $@"
        echo "HOST_KEY_CHECKING=$ANSIBLE_HOST_KEY_CHECKING"
        cat inventory.ini
        if [ -f vars.json ]; then cat vars.json; fi
        sleep "${FAKE_SLEEP:-0}"
        echo "PLAY RECAP" >&2
        exit "${FAKE_EXIT:-0}"
    """))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def auth_failure():
    return asyncssh.PermissionDenied("Authentication failed.")


async def wait_until(predicate, timeout: float = 5, interval: float = 0.02):
    """轮询直到 predicate() 为真"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(interval)


@pytest.fixture
def waiter():
    return wait_until


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "runs"
    os.makedirs(path, exist_ok=True)
    return str(path)


@pytest.fixture
def websocket():
    """返回 FakeWebSocket 构造器"""
    return FakeWebSocket

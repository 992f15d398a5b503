"""
SSH 连接管理器

每台主机最多缓存一条存活的 SSH 连接（asyncssh.SSHClientConnection）：
- connect(host_id)：缓存存活则复用，否则读取主机记录、解密凭据、建立新连接
- disconnect(host_id)：幂等地关闭并移除缓存（删除主机 / 手动重置时调用）
- test_connection(config)：用调用方提供的明文凭据建立一次性连接，不碰缓存

缓存的增删只在事件循环内发生，同一主机的并发 connect 由 asyncio.Lock 串行化，
保证只握手一次。连接失败不自动重试，重试策略由调用方决定。
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

import asyncssh

from core.exceptions import ConnectError, HostNotFoundError
from core.logger import get_logger
from models.host import AuthType, ConnectionTestResult, HostStatus, HostTestConfig

_logger = get_logger("services.connection")

# 握手、认证、通道读写阶段可能抛出的异常
SSH_ERRORS = (asyncssh.Error, asyncssh.KeyImportError, OSError, asyncio.TimeoutError)


def load_private_key(text: str) -> asyncssh.SSHKey:
    """
    从 PEM / OpenSSH 文本解析私钥（RSA / ECDSA / Ed25519 等）。

    Raises:
        asyncssh.KeyImportError: 无法识别的私钥
    """
    return asyncssh.import_private_key(text)


class ConnectionManager:
    """SSH 连接缓存，按 host_id 索引"""

    def __init__(
        self,
        datastore,
        vault,
        connect_timeout: float = 30,
        test_timeout: float = 10,
        connect_func: Callable[..., Awaitable[asyncssh.SSHClientConnection]] = asyncssh.connect,
    ):
        """
        Args:
            datastore: Datastore 实例
            vault: CredentialVault 实例
            connect_timeout: 已入库主机的连接超时（秒）
            test_timeout: test_connection 的连接超时（秒）
            connect_func: 建立连接的协程函数，测试中替换
        """
        self._datastore = datastore
        self._vault = vault
        self._connect_timeout = connect_timeout
        self._test_timeout = test_timeout
        self._connect_func = connect_func

        self._connections: dict[int, asyncssh.SSHClientConnection] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    @staticmethod
    def is_alive(conn) -> bool:
        return not conn.is_closed()

    def get_cached(self, host_id: int) -> Optional[asyncssh.SSHClientConnection]:
        return self._connections.get(host_id)

    @property
    def cached_hosts(self) -> list[int]:
        return list(self._connections)

    async def connect(self, host_id: int) -> asyncssh.SSHClientConnection:
        """
        获取主机连接。

        Raises:
            HostNotFoundError: 主机记录不存在
            DecryptionError: 凭据无法解密
            ConnectError: 握手 / 认证失败（主机状态已标记为 error）
        """
        conn = self._connections.get(host_id)
        if conn is not None and self.is_alive(conn):
            return conn

        lock = self._locks.setdefault(host_id, asyncio.Lock())
        async with lock:
            # 等锁期间可能已经被别的调用方连上
            conn = self._connections.get(host_id)
            if conn is not None:
                if self.is_alive(conn):
                    return conn
                _logger.info(f"主机 {host_id} 的缓存连接已失效，重新连接")
                self._evict(host_id)

            host = await self._datastore.get_host(host_id)
            if host is None:
                raise HostNotFoundError(host_id)

            secret = self._vault.decrypt(host.auth_data)

            _logger.info(f"正在连接主机 {host_id}: {host.username}@{host.hostname}:{host.port}")
            try:
                conn = await self._open(
                    host.hostname, host.port, host.username,
                    host.auth_type, secret, self._connect_timeout,
                )
            except SSH_ERRORS as e:
                _logger.warning(f"连接主机 {host_id} 失败: {e}")
                await self._record_status(host_id, HostStatus.ERROR)
                raise ConnectError(host_id, e) from e

            self._connections[host_id] = conn
            await self._record_status(host_id, HostStatus.ONLINE)
            _logger.info(f"主机 {host_id} 已连接")
            return conn

    def disconnect(self, host_id: int) -> bool:
        """关闭并移除缓存连接，不存在时返回 False"""
        self._locks.pop(host_id, None)
        if self._evict(host_id):
            _logger.info(f"已断开主机 {host_id}")
            return True
        return False

    def disconnect_all(self):
        for host_id in list(self._connections):
            self._evict(host_id)
        self._locks.clear()
        _logger.info("已断开全部 SSH 连接")

    async def test_connection(self, config: HostTestConfig) -> ConnectionTestResult:
        """
        保存主机前的连通性校验。失败通过返回值报告，不抛异常。
        """
        secret = config.password if config.auth_type == AuthType.PASSWORD else config.private_key
        try:
            conn = await self._open(
                config.hostname, config.port, config.username,
                config.auth_type, secret or "", self._test_timeout,
            )
        except SSH_ERRORS as e:
            return ConnectionTestResult(success=False, message=str(e) or type(e).__name__)

        conn.close()
        await conn.wait_closed()
        return ConnectionTestResult(success=True, message="连接成功")

    # ──────────────────────────────────────────
    # 内部
    # ──────────────────────────────────────────

    async def _open(self, hostname: str, port: int, username: str,
                    auth_type: AuthType, secret: str, timeout: float) -> asyncssh.SSHClientConnection:
        # 目标是运维自己管理的主机，不做主机指纹校验；不读本地密钥和 agent
        kwargs = {
            "host": hostname,
            "port": port,
            "username": username,
            "known_hosts": None,
            "agent_path": None,
            "connect_timeout": timeout,
        }
        if auth_type == AuthType.PASSWORD:
            kwargs["password"] = secret
            kwargs["client_keys"] = None
        else:
            kwargs["client_keys"] = [load_private_key(secret)]

        return await self._connect_func(**kwargs)

    def _evict(self, host_id: int) -> bool:
        conn = self._connections.pop(host_id, None)
        if conn is None:
            return False
        try:
            conn.close()
        except SSH_ERRORS as e:
            _logger.debug(f"关闭主机 {host_id} 连接时出错: {e}")
        return True

    async def _record_status(self, host_id: int, status: HostStatus):
        try:
            await self._datastore.update_host(host_id, status=status, last_checked=time.time())
        except HostNotFoundError:
            _logger.debug(f"主机 {host_id} 已被删除，跳过状态回写")

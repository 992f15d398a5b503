"""
远程主机指标采集服务

通过缓存的 SSH 连接在目标主机上执行几条只读命令，采集
CPU、内存、根分区磁盘使用率、运行时长和负载，写入一条 MetricsSnapshot。
首次采集时顺带读取 /etc/os-release 填充主机的 os 字段。
"""

import time
from typing import Optional

from core.exceptions import HubError
from core.logger import get_logger
from models.host import HostStatus, MetricsSnapshot
from services.connection import SSH_ERRORS
from services.executor import run_remote

_logger = get_logger("services.collector")

_CPU_COMMAND = "top -bn1 | grep 'Cpu(s)' | sed 's/.*, *\\([0-9.]*\\)%* id.*/\\1/'"
_MEMORY_COMMAND = "free | grep Mem | awk '{print $3/$2 * 100.0}'"
_DISK_COMMAND = "df -h / | awk 'NR==2 {print $5}' | tr -d '%'"
_UPTIME_COMMAND = "cat /proc/uptime | awk '{print $1}'"
_LOAD_COMMAND = "cat /proc/loadavg | awk '{print $1,$2,$3}'"
_OS_COMMAND = "cat /etc/os-release | grep PRETTY_NAME | cut -d= -f2 | tr -d '\"'"


def _to_number(text: str) -> float:
    try:
        return float(text.strip())
    except ValueError:
        return 0.0


def _percent(value: float) -> int:
    return max(0, min(100, round(value)))


class MetricsCollector:
    """远程主机指标采集"""

    def __init__(self, connections, datastore):
        self._connections = connections
        self._datastore = datastore

    async def collect(self, host_id: int) -> Optional[MetricsSnapshot]:
        """
        采集一次指标并入库。

        连接或执行失败时把主机标记为 error 并返回 None，不向外抛出。
        """
        try:
            conn = await self._connections.connect(host_id)
            snapshot, os_name = await self._gather(conn, host_id)
        except HubError as e:
            _logger.warning(f"主机 {host_id} 指标采集失败: {e}")
            await self._mark_error(host_id)
            return None
        except SSH_ERRORS as e:
            _logger.warning(f"主机 {host_id} 指标采集时连接异常: {e}")
            self._connections.disconnect(host_id)
            await self._mark_error(host_id)
            return None

        await self._datastore.create_metrics(snapshot)

        host = await self._datastore.get_host(host_id)
        fields = {"status": HostStatus.ONLINE, "last_checked": time.time()}
        if host is not None and not host.os and os_name:
            fields["os"] = os_name
        if host is not None:
            await self._datastore.update_host(host_id, **fields)

        return snapshot

    @staticmethod
    async def _gather(conn, host_id: int) -> tuple[MetricsSnapshot, str]:
        """在同一连接上依次执行采集命令"""
        async def stdout_of(command: str) -> str:
            return (await run_remote(conn, command))[0]

        cpu_idle = _to_number(await stdout_of(_CPU_COMMAND))
        memory = _to_number(await stdout_of(_MEMORY_COMMAND))
        disk = _to_number(await stdout_of(_DISK_COMMAND))
        uptime = _to_number(await stdout_of(_UPTIME_COMMAND))
        load = (await stdout_of(_LOAD_COMMAND)).split()
        os_name = (await stdout_of(_OS_COMMAND)).strip()

        snapshot = MetricsSnapshot(
            host_id=host_id,
            cpu_usage=_percent(100 - cpu_idle) if cpu_idle else 0,
            memory_usage=_percent(memory),
            disk_usage=_percent(disk),
            uptime=int(uptime),
            load_average=load[:3],
        )
        return snapshot, os_name

    async def _mark_error(self, host_id: int):
        host = await self._datastore.get_host(host_id)
        if host is not None:
            await self._datastore.update_host(host_id, status=HostStatus.ERROR, last_checked=time.time())

"""
主机数据模型

主机记录由外围 CRUD 层维护；执行核心只读取它，并回写观测到的可达状态。
"""

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AuthType(str, Enum):
    PASSWORD = "password"
    KEY = "key"


class HostStatus(str, Enum):
    """主机可达状态"""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"
    ERROR = "error"


class HostRecord(BaseModel):
    """
    主机记录（持久化到 data/hosts.json）
    """
    id: int
    name: str
    hostname: str = Field(..., description="地址（IP 或域名）")
    port: int = 22
    username: str
    auth_type: AuthType
    auth_data: str = Field(..., description="加密后的密码或私钥")
    tags: list[str] = Field(default_factory=list)
    os: Optional[str] = None
    status: HostStatus = HostStatus.UNKNOWN
    last_checked: Optional[float] = None


class HostCreate(BaseModel):
    """新增主机请求，secret 为明文，入库前加密"""
    name: str
    hostname: str
    port: int = 22
    username: str
    auth_type: AuthType
    secret: str
    tags: list[str] = Field(default_factory=list)


class HostTestConfig(BaseModel):
    """保存前的连接测试参数（调用方直接提供明文凭据，不入库）"""
    hostname: str
    port: int = 22
    username: str
    auth_type: AuthType = AuthType.PASSWORD
    password: Optional[str] = None
    private_key: Optional[str] = None


class ConnectionTestResult(BaseModel):
    success: bool
    message: str


class CommandRecord(BaseModel):
    """命令执行历史，只追加"""
    id: int
    command: str
    host_id: int
    user_id: int = 0
    output: str = ""
    exit_code: Optional[int] = None
    timestamp: float = Field(default_factory=time.time)


class MetricsSnapshot(BaseModel):
    """一次远程采集的主机指标"""
    host_id: int
    cpu_usage: int = 0
    memory_usage: int = 0
    disk_usage: int = 0
    uptime: int = 0
    load_average: list[str] = Field(default_factory=list)
    timestamp: float = Field(default_factory=time.time)

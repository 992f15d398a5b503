"""
执行核心的异常体系

- ConnectError:    主机不可达 / 认证失败，主机状态标记为 error，不自动重试
- DecryptionError: 凭据密文损坏或密钥不匹配，调用方直接失败
- HandlerError:    任务处理器内部失败，调度器统一转换为 failed
- ChannelError:    终端通道失败，发送 error 消息后拆除会话
"""

from typing import Optional


class HubError(Exception):
    """执行核心异常基类"""


class ConnectError(HubError):
    """SSH 连接建立失败"""

    def __init__(self, host_id: Optional[int], cause: BaseException):
        self.host_id = host_id
        self.cause = cause
        super().__init__(str(cause) or type(cause).__name__)


class DecryptionError(HubError):
    """凭据解密失败"""


class HandlerError(HubError):
    """任务处理器失败"""


class ChannelError(HubError):
    """终端交互通道失败"""


class NotFoundError(HubError):
    """记录不存在"""

    kind = "记录"

    def __init__(self, record_id):
        self.record_id = record_id
        super().__init__(f"{self.kind}不存在: {record_id}")


class TaskNotFoundError(NotFoundError):
    kind = "任务"


class HostNotFoundError(NotFoundError):
    kind = "主机"


class AutomationNotFoundError(NotFoundError):
    kind = "自动化剧本"

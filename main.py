"""
ControlHub: 主机集群执行核心入口

使用 bootstrap 初始化 Config + Logger，然后装配执行核心并启动 FastAPI 服务：
存储 → 凭据保险库 → SSH 连接管理 → 命令执行 / 调度器 / 自动化 / 终端中继。
"""

import socket
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from core import bootstrap
from core.logger import get_logger
from api.v1.router import router as v1_router
from models.task import TaskType
from services.automation import AutomationRunner
from services.collector import MetricsCollector
from services.connection import ConnectionManager
from services.executor import CommandExecutor
from services.handlers import CommandTaskHandler, SystemServiceTaskHandler
from services.scheduler import TaskScheduler
from services.storage import Datastore, FileStore
from services.terminal import TerminalRelay
from services.vault import CredentialVault


def create_app(config_path: Optional[str] = None, parse_cli: bool = True) -> FastAPI:
    """创建并配置 FastAPI 应用"""

    # ── Phase 1: 引导加载 ──
    config, logger = bootstrap.init(config_path=config_path, parse_cli=parse_cli)
    app_logger = get_logger("main")

    # ── Phase 2: 存储 + 凭据 ──
    datastore = Datastore(FileStore(config.data_dir))
    vault = CredentialVault(config.get("security.encryption_key", ""))

    # ── Phase 3: 连接 + 执行 ──
    connections = ConnectionManager(
        datastore,
        vault,
        connect_timeout=config.get("ssh.connect_timeout", 30),
        test_timeout=config.get("ssh.test_timeout", 10),
    )
    executor = CommandExecutor(
        connections,
        datastore,
        blacklist=config.get("security.command_blacklist", []),
    )

    # ── Phase 4: 调度器 + 处理器 ──
    scheduler = TaskScheduler(datastore, hard_pause=config.get("scheduler.hard_pause", False))
    automation = AutomationRunner(
        datastore,
        vault,
        scheduler,
        binary=config.get("automation.binary", "ansible-playbook"),
        work_dir=config.get("automation.work_dir"),
        keep_run_dirs=config.get("automation.keep_run_dirs", False),
    )
    scheduler.register_handler(TaskType.COMMAND, CommandTaskHandler(executor))
    scheduler.register_handler(TaskType.SYSTEM_SERVICE, SystemServiceTaskHandler(executor))
    scheduler.register_handler(TaskType.AUTOMATION, automation)

    relay = TerminalRelay(
        connections,
        term=config.get("ssh.terminal_term", "xterm-256color"),
        cols=config.get("ssh.terminal_cols", 80),
        rows=config.get("ssh.terminal_rows", 24),
    )
    collector = MetricsCollector(connections, datastore)

    # ── 生命周期管理 ──
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用启动/关闭生命周期"""
        app_logger.info("正在启动后台服务...")

        if config.get("scheduler.resume_queued_on_start", True):
            await scheduler.initialize()

        app_logger.info(f"{config.get('app.name')} 就绪")
        _print_ready_banner(config)

        yield

        # 关闭
        app_logger.info("正在停止后台服务...")
        await relay.close_all()
        await scheduler.shutdown()
        connections.disconnect_all()

    # ── 创建 FastAPI 实例 ──
    app = FastAPI(
        title=config.get("app.name"),
        version=config.get("app.version"),
        docs_url="/api/docs" if config.get("app.debug") else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # 全局状态挂载
    app.state.config = config
    app.state.datastore = datastore
    app.state.vault = vault
    app.state.connections = connections
    app.state.executor = executor
    app.state.scheduler = scheduler
    app.state.automation = automation
    app.state.relay = relay
    app.state.collector = collector

    # ── 注册 API 路由 ──
    app.include_router(v1_router)

    app_logger.info(
        f"FastAPI 应用创建完成: {config.get('app.name')} v{config.get('app.version')}"
    )

    return app


def _print_ready_banner(config):
    """在所有启动日志之后打印醒目的就绪信息"""
    host = config.get("server.host", "0.0.0.0")
    port = config.get("server.port", 8300)

    # 获取实际可访问的 IP
    if host in ("0.0.0.0", ""):
        try:
            local_ip = socket.gethostbyname(socket.gethostname())
        except OSError:
            local_ip = "127.0.0.1"
    else:
        local_ip = host

    CYAN  = "\033[96m"
    GREEN = "\033[92m"
    BOLD  = "\033[1m"
    RESET = "\033[0m"

    name = config.get("app.name", "ControlHub")
    version = config.get("app.version", "")

    lines = [
        f"{CYAN}{'═' * 52}{RESET}",
        f"{CYAN}  {BOLD}{name} v{version}{RESET}{CYAN}  已就绪{RESET}",
        f"{CYAN}{'─' * 52}{RESET}",
        f"  {GREEN}访问地址{RESET}  http://{local_ip}:{port}",
        f"  {GREEN}数据目录{RESET}  {config.data_dir}",
        f"  {GREEN}自动化工具{RESET}  {config.get('automation.binary')}",
        f"{CYAN}{'═' * 52}{RESET}",
    ]

    print("\n" + "\n".join(lines) + "\n", flush=True)


if __name__ == "__main__":
    app = create_app()
    config = app.state.config
    uvicorn.run(
        app,
        host=config.get("server.host"),
        port=config.get("server.port"),
        log_level="info",
    )

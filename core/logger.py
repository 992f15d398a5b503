"""
日志工具模块

基于 Python 标准 logging 模块：
- 彩色控制台输出
- app.log 全量日志 + error.log 错误日志（自动轮转）
- 引导阶段的临时 Logger，配置加载后再切换到正式 Handler

所有业务模块通过 get_logger("services.xxx") 获取挂在 hub 根 Logger 下的子 Logger。
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional


_RESET = "\033[0m"

# 级别 → 颜色
_LEVEL_COLORS: dict[int, str] = {
    logging.DEBUG:    "\033[96m",
    logging.INFO:     "\033[92m",
    logging.WARNING:  "\033[93m",
    logging.ERROR:    "\033[91m",
    logging.CRITICAL: "\033[41m\033[97m\033[1m",
}

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"
_BOOT_FORMAT = "%(asctime)s | %(levelname)-8s | [BOOT] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_ROOT_LOGGER_NAME = "hub"

_manager: Optional["LogManager"] = None


class ColoredFormatter(logging.Formatter):
    """只给级别名和消息着色，时间戳和位置保持原样"""

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None,
                 colorize: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._colorize = colorize

    def format(self, record: logging.LogRecord) -> str:
        if not self._colorize:
            return super().format(record)

        orig_levelname, orig_msg = record.levelname, record.msg
        color = _LEVEL_COLORS.get(record.levelno, "")
        record.levelname = f"{color}{record.levelname:<8}{_RESET}"
        record.msg = f"{color}{record.msg}{_RESET}"
        try:
            return super().format(record)
        finally:
            # 恢复，避免污染文件 Handler
            record.levelname, record.msg = orig_levelname, orig_msg


class LogManager:
    """
    管理 hub 根 Logger 上的全部 Handler。

    两个阶段：
    1. setup_temporary()：引导阶段，仅 stderr
    2. reconfigure(config)：读取 logging 配置段后接管
    """

    def __init__(self):
        self._root_logger = logging.getLogger(_ROOT_LOGGER_NAME)
        self._handlers: list[logging.Handler] = []
        self._configured = False

    @property
    def logger(self) -> logging.Logger:
        return self._root_logger

    @property
    def is_configured(self) -> bool:
        return self._configured

    def _add_handler(self, handler: logging.Handler):
        self._root_logger.addHandler(handler)
        self._handlers.append(handler)

    def _clear_handlers(self):
        for handler in self._handlers:
            self._root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

    def setup_temporary(self) -> logging.Logger:
        self._clear_handlers()
        self._root_logger.setLevel(logging.DEBUG)

        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(ColoredFormatter(fmt=_BOOT_FORMAT, datefmt=_DATE_FORMAT))
        self._add_handler(handler)
        return self._root_logger

    def reconfigure(self, config: dict, project_root: Optional[str] = None) -> logging.Logger:
        """
        按 logging 配置段重建 Handler。

        Args:
            config: logging 配置段（结构见 core/config.py 中的内置默认值）
            project_root: 相对日志目录的基准路径
        """
        self._clear_handlers()

        level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
        self._root_logger.setLevel(level)
        log_format = config.get("format", _DEFAULT_FORMAT)

        console_cfg = config.get("console", {})
        if console_cfg.get("enabled", True):
            console = logging.StreamHandler(sys.stdout)
            console.setLevel(level)
            console.setFormatter(ColoredFormatter(
                fmt=log_format,
                datefmt=_DATE_FORMAT,
                colorize=console_cfg.get("colorize", True),
            ))
            self._add_handler(console)

        file_cfg = config.get("file", {})
        if file_cfg.get("enabled", True):
            log_dir = file_cfg.get("directory", "logs")
            if not os.path.isabs(log_dir):
                base = project_root or os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
                log_dir = os.path.join(base, log_dir)
            os.makedirs(log_dir, exist_ok=True)

            max_bytes = file_cfg.get("max_size_mb", 10) * 1024 * 1024
            backup_count = file_cfg.get("backup_count", 5)
            file_formatter = logging.Formatter(fmt=log_format, datefmt=_DATE_FORMAT)

            for name, handler_level in (
                (file_cfg.get("app_log", "app.log"), level),
                (file_cfg.get("error_log", "error.log"), logging.ERROR),
            ):
                handler = RotatingFileHandler(
                    os.path.join(log_dir, name),
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
                handler.setLevel(handler_level)
                handler.setFormatter(file_formatter)
                self._add_handler(handler)

        self._configured = True
        return self._root_logger


def _get_manager() -> LogManager:
    global _manager
    if _manager is None:
        _manager = LogManager()
    return _manager


def create_temporary_logger() -> logging.Logger:
    """创建引导阶段使用的临时 Logger（stderr，DEBUG，带 [BOOT] 前缀）"""
    return _get_manager().setup_temporary()


def reconfigure_logger(config: dict, project_root: Optional[str] = None) -> logging.Logger:
    """用 logging 配置段替换临时 Handler"""
    return _get_manager().reconfigure(config, project_root=project_root)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取子 Logger。

    Args:
        name: 模块名，如 "services.scheduler"，会挂到 hub 根 Logger 下
    """
    if name is None:
        return logging.getLogger(_ROOT_LOGGER_NAME)
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")

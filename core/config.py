"""
配置管理器模块

提供：
- YAML 文件加载（config.yaml 或 --config 指定路径，缺失时生成默认文件）
- 环境变量覆盖（APP_ 前缀，双下划线表示层级，如 APP_SSH__CONNECT_TIMEOUT=15）
- 深度合并（内置默认 < YAML < 环境变量）
- 点号路径访问（config.get("ssh.connect_timeout")）
- 冻结锁定
"""

import argparse
import copy
import logging
import os
import tempfile
from typing import Any, Optional

import yaml


_ENV_PREFIX = "APP_"
_ENV_SEPARATOR = "__"


# ──────────────────────────────────────────────
# 内置默认配置
# ──────────────────────────────────────────────

_BUILTIN_DEFAULTS: dict[str, Any] = {
    "app": {
        "name": "ControlHub",
        "version": "0.1.0",
        "debug": False,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8300,
    },
    "storage": {
        "data_dir": "data",
    },
    "security": {
        # 凭据加密密钥，留空时使用开发用内置密钥（启动时告警）
        "encryption_key": "",
        # 子串匹配，忽略大小写
        "command_blacklist": ["rm -rf /", "mkfs", "dd if=/dev/zero"],
    },
    "ssh": {
        "connect_timeout": 30,
        "test_timeout": 10,
        "terminal_term": "xterm-256color",
        "terminal_cols": 80,
        "terminal_rows": 24,
    },
    "automation": {
        "binary": "ansible-playbook",
        "work_dir": os.path.join(tempfile.gettempdir(), "controlhub"),
        "keep_run_dirs": False,
    },
    "scheduler": {
        "hard_pause": False,
        "resume_queued_on_start": True,
    },
    "logging": {
        "level": "INFO",
        "console": {
            "enabled": True,
            "colorize": True,
        },
        "file": {
            "enabled": True,
            "directory": "logs",
            "max_size_mb": 10,
            "backup_count": 5,
            "app_log": "app.log",
            "error_log": "error.log",
        },
        "format": "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s",
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """递归合并，override 覆盖 base"""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _parse_env_value(value: str) -> Any:
    """环境变量字符串 → bool / None / int / float / str"""
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered in ("null", "none", ""):
        return None
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    return value


def _set_nested(data: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        if key not in data or not isinstance(data[key], dict):
            data[key] = {}
        data = data[key]
    data[keys[-1]] = value


def _get_nested(data: dict, keys: list[str], default: Any = None) -> Any:
    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


class ConfigManager:
    """
    配置管理器。

    加载优先级（从低到高）：
    1. 内置默认值
    2. YAML 配置文件
    3. 环境变量（APP_ 前缀）

    使用方式：
        config = ConfigManager(logger=temp_logger).load()
        timeout = config.get("ssh.connect_timeout")
        config.freeze()
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._data: dict[str, Any] = copy.deepcopy(_BUILTIN_DEFAULTS)
        self._frozen = False
        self._logger = logger or logging.getLogger(__name__)
        self._config_file_path: Optional[str] = None
        self._project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    def load(self, config_path: Optional[str] = None, parse_cli: bool = True) -> "ConfigManager":
        """
        按优先级加载配置。

        Args:
            config_path: 配置文件路径；不传时读取 --config，再退回 <项目根>/config.yaml
            parse_cli: 是否解析命令行 --config 参数（测试中关闭）

        Returns:
            self
        """
        self._logger.info("开始加载配置系统")
        self._data = copy.deepcopy(_BUILTIN_DEFAULTS)

        final_path = config_path
        if final_path is None and parse_cli:
            final_path = self._parse_cli_args()
        if final_path is None:
            final_path = os.path.join(self._project_root, "config.yaml")
        self._config_file_path = os.path.abspath(final_path)

        self._load_yaml(self._config_file_path)
        self._load_env_overrides()
        self._log_effective_config()

        self._logger.info("配置系统加载完成")
        return self

    def _parse_cli_args(self) -> Optional[str]:
        parser = argparse.ArgumentParser(add_help=False)
        parser.add_argument("--config", "-c", type=str, default=None)
        args, _ = parser.parse_known_args()
        if args.config:
            self._logger.info(f"命令行指定配置文件: {args.config}")
        return args.config

    def _load_yaml(self, path: str):
        if not os.path.isfile(path):
            self._logger.info(f"配置文件不存在，正在生成默认配置: {path}")
            try:
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path, "w", encoding="utf-8") as f:
                    yaml.safe_dump(
                        copy.deepcopy(_BUILTIN_DEFAULTS), f,
                        default_flow_style=False,
                        allow_unicode=True,
                        sort_keys=False,
                    )
            except OSError as e:
                self._logger.warning(f"生成默认配置文件失败: {e}，使用内置默认配置")
            return

        try:
            with open(path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self._logger.error(f"YAML 解析失败: {e}，使用内置默认配置")
            return
        except OSError as e:
            self._logger.error(f"读取配置文件失败: {e}")
            return

        if yaml_data is None:
            self._logger.warning("配置文件为空，使用内置默认配置")
            return
        if not isinstance(yaml_data, dict):
            self._logger.error(f"配置文件格式错误（期望字典，得到 {type(yaml_data).__name__}）")
            return

        self._data = _deep_merge(self._data, yaml_data)
        self._logger.info(f"已合并 YAML 配置（{len(yaml_data)} 个顶级键）")

    def _load_env_overrides(self):
        count = 0
        for key, value in sorted(os.environ.items()):
            if not key.startswith(_ENV_PREFIX):
                continue
            parts = key[len(_ENV_PREFIX):].lower().split(_ENV_SEPARATOR.lower())
            parsed = _parse_env_value(value)
            _set_nested(self._data, parts, parsed)
            self._logger.debug(f"环境变量覆盖: {'.'.join(parts)} = {parsed!r}")
            count += 1
        if count:
            self._logger.info(f"已应用 {count} 个环境变量覆盖")

    def _log_effective_config(self):
        self._logger.info("-" * 40)
        self._logger.info(f"  应用:       {self.get('app.name')} v{self.get('app.version')}")
        self._logger.info(f"  服务地址:   {self.get('server.host')}:{self.get('server.port')}")
        self._logger.info(f"  数据目录:   {self.data_dir}")
        self._logger.info(f"  自动化工具: {self.get('automation.binary')}")
        self._logger.info(f"  日志级别:   {self.get('logging.level')}")
        self._logger.info(f"  配置文件:   {self._config_file_path}")
        self._logger.info("-" * 40)

    # ──────────────────────────────────────────
    # 公共 API
    # ──────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """按点号路径获取配置值，如 config.get("ssh.test_timeout")"""
        return _get_nested(self._data, key.split("."), default)

    def set(self, key: str, value: Any):
        """
        按点号路径设置配置值。

        Raises:
            RuntimeError: 配置已冻结
        """
        if self._frozen:
            raise RuntimeError(f"配置已冻结，无法修改: {key}")
        _set_nested(self._data, key.split("."), value)

    def freeze(self):
        self._frozen = True
        self._logger.debug("配置已冻结")

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    @property
    def data_dir(self) -> str:
        """数据目录的绝对路径（相对路径基于项目根目录）"""
        data_dir = self.get("storage.data_dir", "data")
        if not os.path.isabs(data_dir):
            data_dir = os.path.join(self._project_root, data_dir)
        return data_dir

    @property
    def config_file_path(self) -> Optional[str]:
        return self._config_file_path

    @property
    def project_root(self) -> str:
        return self._project_root

    def __repr__(self) -> str:
        status = "frozen" if self._frozen else "mutable"
        return f"<ConfigManager({status}, keys={list(self._data.keys())})>"

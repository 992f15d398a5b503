"""
引导加载器模块

Config 与 Logger 互相依赖：
1. 创建临时 Logger（仅 stderr）
2. 用临时 Logger 加载 Config
3. 按 Config 的 logging 段重新配置正式 Logger
"""

import logging
from typing import Optional

from core.config import ConfigManager
from core.logger import create_temporary_logger, reconfigure_logger


def init(config_path: Optional[str] = None, parse_cli: bool = True) -> tuple[ConfigManager, logging.Logger]:
    """
    初始化配置与日志。

    Args:
        config_path: 可选的配置文件路径
        parse_cli: 是否解析 --config 命令行参数

    Returns:
        (config, logger)
    """
    temp_logger = create_temporary_logger()
    temp_logger.info("引导加载器启动")

    config = ConfigManager(logger=temp_logger)
    config.load(config_path=config_path, parse_cli=parse_cli)

    logging_config = config.get("logging", {})
    logger = reconfigure_logger(logging_config, project_root=config.project_root)

    logger.info("=" * 60)
    logger.info(f"日志系统已切换到正式模式, 级别={logging_config.get('level', 'INFO')}")
    logger.info(f"文件日志: {'启用' if logging_config.get('file', {}).get('enabled', True) else '禁用'}")
    logger.info("=" * 60)

    config.freeze()
    return config, logger

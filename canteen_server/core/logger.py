"""
日志配置
"""
import logging
import sys

from ..config.settings import settings


def get_logger(name: str) -> logging.Logger:
    """获取已配置的 logger"""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(logging.DEBUG if settings.debug else logging.INFO)
    return logger

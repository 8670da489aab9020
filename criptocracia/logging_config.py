# criptocracia/logging_config.py
"""Logging setup for processes embedding the voter core."""

import logging
import os
from logging.handlers import RotatingFileHandler


class LogConfig:
    APP_LOG_FILE = 'app.log'
    ERROR_LOG_FILE = 'error.log'

    MAX_BYTES = 5 * 1024 * 1024
    BACKUP_COUNT = 5

    DETAILED_FORMAT = (
        '%(asctime)s - %(name)s - %(levelname)s - '
        '[%(filename)s:%(lineno)d] - %(funcName)s() - %(message)s'
    )
    SIMPLE_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def setup_logging(debug=False, log_dir=None, logger_name='criptocracia'):
    """Attach console (and optionally rotating file) handlers to the package logger.

    Safe to call more than once: previously attached handlers are replaced.
    """
    level = logging.DEBUG if debug else logging.INFO
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LogConfig.SIMPLE_FORMAT))
    logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

        app_handler = RotatingFileHandler(
            os.path.join(log_dir, LogConfig.APP_LOG_FILE),
            maxBytes=LogConfig.MAX_BYTES,
            backupCount=LogConfig.BACKUP_COUNT
        )
        app_handler.setLevel(level)
        app_handler.setFormatter(logging.Formatter(LogConfig.DETAILED_FORMAT))
        logger.addHandler(app_handler)

        error_handler = RotatingFileHandler(
            os.path.join(log_dir, LogConfig.ERROR_LOG_FILE),
            maxBytes=LogConfig.MAX_BYTES,
            backupCount=LogConfig.BACKUP_COUNT
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(logging.Formatter(LogConfig.DETAILED_FORMAT))
        logger.addHandler(error_handler)

    logger.debug('Logging configured (level=%s, log_dir=%s)', logging.getLevelName(level), log_dir)
    return logger


def setup_logging_from_config(config):
    return setup_logging(debug=config.debug, log_dir=config.log_dir)

"""
Guardian Account - Structured Logging Configuration

Configures structured JSON logging for account hosts:
- JSON format for easy parsing and aggregation
- Log rotation to prevent disk space issues
- Console and optional file handlers

Usage:
    from guardian_account.core.logging_config import setup_logging

    logger = setup_logging(
        name="guardian_account",
        log_file="/var/log/guardian_account/account.json",
        level="INFO"
    )

    logger.info("Escape triggered", extra={"event": "escape.owner_triggered"})
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from guardian_account.core import config


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter with network and service context.

    Every record carries the network and chain id so logs from testnet and
    mainnet hosts can share one aggregation pipeline.
    """

    def __init__(
        self,
        fmt: str = "%(timestamp)s %(level)s %(name)s %(message)s",
        timestamp: bool = True,
        service_name: str = "guardian_account",
    ):
        super().__init__(fmt=fmt)
        self.timestamp = timestamp
        self.service_name = service_name

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        """Add custom fields to log record."""
        super().add_fields(log_record, record, message_dict)

        if self.timestamp and not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat()

        log_record["network"] = config.NETWORK
        log_record["chain_id"] = config.CHAIN_ID_NAME
        log_record["service"] = self.service_name

        if not log_record.get("level"):
            log_record["level"] = record.levelname.lower()

        log_record["source"] = {
            "function": record.funcName,
            "module": record.module,
            "line": record.lineno,
        }


def setup_logging(
    name: str = "guardian_account",
    log_file: Optional[str] = None,
    level: Optional[str] = None,
    enable_console: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Setup structured JSON logging.

    Args:
        name: Logger name (the package logger by default)
        log_file: Path to JSON log file (defaults to GUARDIAN_ACCOUNT_LOG_FILE)
        level: Logging level (defaults to GUARDIAN_ACCOUNT_LOG_LEVEL)
        enable_console: Whether to log to stdout
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Configured logger instance
    """
    level_name = (level or config.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, None)
    if not isinstance(log_level, int):
        raise config.ConfigurationError(f"Unknown log level {level_name!r}")

    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    formatter = CustomJsonFormatter(service_name=name.split(".")[0])

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    log_file = log_file or config.LOG_FILE
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get a logger, configuring it with the JSON handlers on first use."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        return setup_logging(name=name, level=level)
    return logger


def short_id(value: int) -> str:
    """Truncated hex rendering of a GUID or address for log fields."""
    return hex(value)[:18]

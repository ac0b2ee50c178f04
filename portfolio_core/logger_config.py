"""Logging configuration for the portfolio core services"""

import logging
import re
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_REDACTED = "***"
_SECRET_PATTERNS = (
    re.compile(r"(?i)(bearer\s+)[^\s,;'\"]+"),
    re.compile(r"(?i)(token\s*[=:]\s*)[^\s,;'\"]+"),
    re.compile(r"(?i)(password\s*[=:]\s*)[^\s,;'\"]+"),
)


def setup_logging(
    log_dir: Optional[str] = "logs",
    log_level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> None:
    """
    Setup logging configuration with file and console handlers.

    Args:
        log_dir: Directory to store log files, or None for console only
        log_level: Logging level (default: INFO)
        max_bytes: Maximum size of each log file before rotation
        backup_count: Number of backup log files to keep
    """
    detailed_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_formatter = logging.Formatter(
        '%(levelname)s - %(message)s'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    log_filename = None
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_filename = log_path / f"portfolio_core_{datetime.now().strftime('%Y%m%d')}.log"

        file_handler = RotatingFileHandler(
            log_filename,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(file_handler)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    if log_filename is not None:
        logging.getLogger(__name__).debug(f"Log file: {log_filename}")


def mask_secret(value: Optional[str], visible: int = 3) -> str:
    """
    Render a credential for logs without revealing it.

    Args:
        value: Secret or account identifier
        visible: Number of leading characters to keep

    Returns:
        Masked string, e.g. ``ab***``; ``<unset>`` when empty
    """
    if not value:
        return "<unset>"
    if len(value) <= visible:
        return _REDACTED
    return f"{value[:visible]}{_REDACTED}"


def redact(text: str) -> str:
    """Scrub bearer tokens and password assignments from free text."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(rf"\1{_REDACTED}", text)
    return text

"""Logging configuration for megparcel.

This module provides centralized logging configuration for the pipeline
entry points. Supports both console and file output with configurable log
levels.

Usage:
    from megparcel.utils.logging_config import setup_logging

    logger = setup_logging(
        name=__name__,
        log_file="source_recon_sub-04.log",
        level="INFO",
        config=config,
    )
    logger.info("Processing started")
"""

import logging
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import mne

from megparcel.utils.config import get_config

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LogFormatter(logging.Formatter):
    """Custom formatter with color support for console output."""

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'
    }

    def __init__(self, fmt: str, use_color: bool = True):
        super().__init__(fmt, datefmt="%Y-%m-%d %H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """Format log record, colouring the level name on a copy of the record."""
        if self.use_color and record.levelname in self.COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = (
                f"{self.COLORS[record.levelname]}"
                f"{record.levelname}"
                f"{self.COLORS['RESET']}"
            )

        return super().format(record)


def _resolve_log_file(log_file: Union[str, Path], logs_dir: Path) -> Path:
    """Place relative log files under the logs directory and timestamp new ones."""
    log_file_path = Path(log_file)
    if not log_file_path.is_absolute():
        log_file_path = logs_dir / log_file_path

    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    if not log_file_path.exists():
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file_path = log_file_path.parent / f"{log_file_path.stem}_{timestamp}{log_file_path.suffix}"

    return log_file_path


def setup_logging(
    name: str,
    log_file: Optional[Union[str, Path]] = None,
    level: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    console: bool = True,
    use_color: bool = True,
) -> logging.Logger:
    """Setup logging for a script or module.

    Creates a logger with console and file handlers (if log_file specified).
    The ``megparcel`` package logger receives the same handlers so that stage
    modules logging through ``logging.getLogger(__name__)`` end up in the same
    file as the entry point.

    Args:
        name: Logger name (typically __name__ of calling module)
        log_file: Optional log file path (relative to logs directory from config)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               If None, uses level from config.yaml
        config: Configuration dictionary. If None, loads default config.
        console: Whether to add console handler
        use_color: Whether to use color in console output

    Returns:
        Configured logger instance
    """
    if config is None:
        config = get_config()

    log_config = config.get("logging", {})
    if level is None:
        level = log_config.get("level", "INFO")
    log_level = getattr(logging, level.upper())

    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    # Prevent duplicate handlers
    if logger.handlers:
        return logger

    package_logger = logging.getLogger("megparcel")
    package_logger.setLevel(log_level)
    if name == "megparcel" or name.startswith("megparcel."):
        # Module loggers propagate to the package logger
        targets = [] if package_logger.handlers else [package_logger]
    else:
        targets = [logger] + ([] if package_logger.handlers else [package_logger])

    log_format = log_config.get("format", DEFAULT_FORMAT)

    handlers = []
    if console and log_config.get("to_console", True):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(LogFormatter(log_format, use_color=use_color))
        handlers.append(console_handler)

    log_file_path = None
    if log_file and log_config.get("to_file", True):
        log_file_path = _resolve_log_file(log_file, Path(config["paths"]["logs"]))
        file_handler = logging.FileHandler(log_file_path, mode='a')
        file_handler.setLevel(log_level)
        # No color in file output
        file_handler.setFormatter(LogFormatter(log_format, use_color=False))
        handlers.append(file_handler)

    for target in targets:
        for handler in handlers:
            target.addHandler(handler)

    # MNE logs through its own logger; keep it to warnings
    mne.set_log_level("WARNING")

    if log_file_path is not None:
        logger.info(f"Logging to file: {log_file_path}")

    return logger


def get_git_hash(cwd: Optional[Path] = None) -> str:
    """Return the current git commit hash, or 'unknown' outside a repository."""
    try:
        return (
            subprocess.check_output(
                ["git", "rev-parse", "HEAD"],
                cwd=cwd or Path(__file__).parent,
                stderr=subprocess.DEVNULL,
            )
            .decode()
            .strip()
        )
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def log_provenance(
    logger: logging.Logger,
    script_name: str,
    parameters: Optional[Dict[str, Any]] = None,
    config: Optional[Dict[str, Any]] = None,
) -> None:
    """Log provenance information (git hash, parameters, data root).

    Args:
        logger: Logger instance
        script_name: Name of script being executed
        parameters: Pipeline parameters to record, one per line
        config: Configuration dictionary

    Example:
        >>> logger = setup_logging(__name__, config=config)
        >>> log_provenance(logger, "run_source_reconstruction", params.to_dict())
    """
    logger.info("=" * 80)
    logger.info(f"Starting: {script_name}")
    logger.info(f"Timestamp: {datetime.now().isoformat()}")
    logger.info(f"Git commit: {get_git_hash()}")
    logger.info(f"MNE version: {mne.__version__}")

    if config:
        logger.info(f"Data root: {config['paths']['data_root']}")

    if parameters:
        for key, value in parameters.items():
            logger.info(f"  {key}: {value}")

    logger.info("=" * 80)

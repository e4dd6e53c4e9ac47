"""Logging configuration utilities."""

import sys
from pathlib import Path

from loguru import logger


def _is_protocol(record) -> bool:
    return record["extra"].get("uci", False)


def _not_protocol(record) -> bool:
    return not record["extra"].get("uci", False)


def setup_logging(
    level: str = "INFO",
    log_file: str | Path | None = None,
    protocol_log: str | Path | None = None,
    rotation: str = "10 MB",
    retention: str = "1 week",
) -> None:
    """Configure loguru for chess-play.

    Engine protocol lines are logged at TRACE with uci=True bound, so the
    console shows them only when level is TRACE. With protocol_log set they
    all go to that transcript, whatever the level, instead of log_file.

    Args:
        level: Minimum log level for the console and log_file.
        log_file: Optional path to a log file.
        protocol_log: Optional path to a transcript of every line sent to
            and received from the engine.
        rotation: When to rotate the log files.
        retention: How long to keep old log files.
    """
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        level=level,
        format=(
            "<green>{time:HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan> | "
            "<level>{message}</level>"
        ),
        colorize=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}",
            filter=_not_protocol if protocol_log else None,
            rotation=rotation,
            retention=retention,
            compression="gz",
        )

    if protocol_log:
        transcript = Path(protocol_log)
        transcript.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            transcript,
            level="TRACE",
            format="{time:HH:mm:ss.SSS} | {message}",
            filter=_is_protocol,
            rotation=rotation,
            retention=retention,
        )

    logger.debug(f"Logging configured at level: {level}")

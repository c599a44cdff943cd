"""Shared utility functions for CirQuant."""

import logging
from datetime import datetime, timezone
from pathlib import Path


def setup_logger(
    name: str, log_file: Path | None = None, level: int | str = logging.INFO
) -> logging.Logger:
    """Set up logger with console and file handlers.

    Handlers are attached only once per logger name, so components that are
    instantiated per year (and per thread) share the same handlers.

    Args:
        name: Logger name
        log_file: Optional path to log file
        level: Logging level (int constant or string name like 'DEBUG', 'INFO')

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Convert string level to int if needed
    if isinstance(level, str):
        numeric_level = getattr(logging, level.upper(), logging.INFO)
        logger.setLevel(numeric_level)
    else:
        logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string (seconds precision)."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_year_range(years: str) -> list[int]:
    """Parse 'YYYY' or 'YYYY-YYYY' into an inclusive list of years.

    Raises:
        ValueError: If the string is malformed or the range is inverted.
    """
    parts = [p.strip() for p in years.split("-")]
    if len(parts) == 1:
        start = end = int(parts[0])
    elif len(parts) == 2:
        start, end = int(parts[0]), int(parts[1])
    else:
        raise ValueError(
            f"Invalid years format '{years}'. Use 'YYYY' for a single year or 'YYYY-YYYY' for a range."
        )

    if start > end:
        raise ValueError(f"Invalid year range '{years}': start is after end")

    return list(range(start, end + 1))

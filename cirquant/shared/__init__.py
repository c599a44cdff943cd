"""Shared utilities, configuration and error types."""

from cirquant.shared.config import Config
from cirquant.shared.utils import parse_year_range, setup_logger, utc_now_iso

__all__ = ["Config", "setup_logger", "parse_year_range", "utc_now_iso"]

"""Collectors package: raw Eurostat downloads into the raw database."""

from cirquant.ingestion.collectors.base_collector import BaseCollector, RateLimiter, RetryPolicy
from cirquant.ingestion.collectors.eurostat_collector import (
    COLLECTORS,
    ComextCollector,
    EurostatCollector,
    EurostatDataset,
    FetchGap,
    ProdcomCollector,
    jsonstat_to_frame,
)

__all__ = [
    # Base
    "BaseCollector",
    "RateLimiter",
    "RetryPolicy",
    # Eurostat
    "COLLECTORS",
    "ComextCollector",
    "EurostatCollector",
    "EurostatDataset",
    "FetchGap",
    "ProdcomCollector",
    "jsonstat_to_frame",
]

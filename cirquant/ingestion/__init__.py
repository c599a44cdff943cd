"""Data ingestion module - collectors and raw-table preprocessors."""

"""Service lifecycle, rate limiting, metrics aggregation, alert batching and bot pool management for a scan node."""

__version__ = "0.1.0"
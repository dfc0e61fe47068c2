"""Data ingestion utilities."""

from .loader import LoaderConfig, LoaderError, load_returns, to_log_returns, validate_returns

__all__ = [
    "LoaderConfig",
    "LoaderError",
    "load_returns",
    "to_log_returns",
    "validate_returns",
]

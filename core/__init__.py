"""
Core utilities and configuration for the metadata ingestion system.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database engine and session factory
    exceptions: Error taxonomy (retryable, non-retryable, infrastructure)
    logging: Logging configuration

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import TransientSourceError, AuthError
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "IngestionException",
    "SourceError",
    "TransientSourceError",
    "RateLimitedError",
    "AuthError",
    "NotFoundError",
    "MalformedResponseError",
    "InvalidRequestError",
    "SinkWriteError",
    "ArchiveWriteError",
    "UpsertError",
    "InfrastructureError",
    "BusUnavailableError",
    "WatermarkStoreError",
    "ConfigurationError",
    "RetryableError",
    "NonRetryableError",
    "ErrorKind",
    "classify_error",
]

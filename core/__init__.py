"""
Core utilities and configuration for the bulk export pipeline.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management (job status store)
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import NotFoundError, UpstreamError
    from core.logging import setup_logging
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "ExportException",
    "ConfigurationError",
    "MalformedInputError",
    "EmptyInputError",
    "ItemError",
    "NotFoundError",
    "TransformError",
    "UpstreamError",
    "SkipLimitExceededError",
    "WriteError",
    "JobCancelledError",
]

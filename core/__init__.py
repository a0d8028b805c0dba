"""
Core utilities and configuration for the Billwatch job queue.

This package provides foundational components used throughout the queue:

Modules:
    config: Application configuration and environment variable management
    database: Database engine, session management and dialect helpers
    exceptions: Custom exception hierarchy with stable error codes
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import get_session
    from core.clock import utcnow
    from core.exceptions import NetworkError, InvalidTransitionError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "get_session",
    "utcnow",
    "setup_logging",
    # Exceptions
    "QueueException",
    "RetryableError",
    "NonRetryableError",
    "StoreError",
    "DatabaseConnectionError",
    "DeadlockError",
    "JobError",
    "InvalidTransitionError",
    "RecordNotFoundError",
    "InvalidPayloadError",
    "DeliveryError",
    "ExtractionError",
    "NetworkError",
    "RateLimitError",
    "QuotaExceededError",
    "AuthenticationError",
    "ResourceNotFoundError",
    "ProviderRejectedError",
    "InvalidRecipientError",
    "UnsupportedChannelError",
    "MalformedDocumentError",
]

"""
Core utilities and configuration for the export connector.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Settings loaded from the environment and their cross-field rules
    database: Async engine creation for the SQL warehouse
    exceptions: Exception hierarchy with structured error context
    logging: Logging configuration

Usage:
    from core.config import settings, validate_settings
    from core.database import make_engine
    from core.exceptions import BundleDownloadError, CheckpointError
    from core.logging import setup_logging

Example:
    setup_logging()
    conf = validate_settings(settings)
    engine = make_engine(conf.DATABASE_URL)
"""

__all__ = [
    "settings",
    "validate_settings",
    "make_engine",
    "setup_logging",
    # Exceptions
    "ETLException",
    "ExtractionError",
    "APIExtractionError",
    "SourceStatusError",
    "RateLimitError",
    "SourceServerError",
    "AuthenticationError",
    "ResourceNotFoundError",
    "BundleDownloadError",
    "BundleDecodeError",
    "TransformationError",
    "RecordTransformError",
    "SchemaValidationError",
    "LoadError",
    "StagingError",
    "StorageError",
    "DatabaseError",
    "SchemaCompatibilityError",
    "CheckpointError",
    "ConfigurationError",
    "BackoffExhaustedError",
]

"""
Exception taxonomy for the ingestion pipeline.

Field- and record-level errors are absorbed by the transformer and surfaced through
the audit log. Phase-level errors (parse, schema, lock, transaction) abort the run.
"""
from typing import Any, Optional


class IngestionError(Exception):
    """Base exception for all ingestion failures"""

    error_type = "INGESTION_ERROR"

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error


class ParseError(IngestionError):
    """Feed file is missing, malformed or has an unrecognized root envelope"""

    error_type = "XML_PARSE_ERROR"


class ValidationError(IngestionError):
    """Field-level validation failure; never fatal to the run"""

    error_type = "VALIDATION_ERROR"


class TransformError(IngestionError):
    """Unexpected failure while mapping a single record"""

    error_type = "TRANSFORM_ERROR"


class ConfigurationError(IngestionError):
    """Settings are incomplete or no engine can be built from them"""

    error_type = "CONFIGURATION_ERROR"


class BatchPersistError(IngestionError):
    """Database error while writing one batch"""

    error_type = "BATCH_PERSIST_ERROR"

    def __init__(
        self,
        message: str,
        operation: str,
        batch_size: int,
        context: Optional[dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, context, original_error)
        self.operation = operation
        self.batch_size = batch_size


class TransactionError(IngestionError):
    """Load transaction could not be completed; the whole run is rolled back"""

    error_type = "TRANSACTION_ERROR"


class SchemaMismatchError(IngestionError):
    """Destination schema is missing tables the loader depends on"""

    error_type = "SCHEMA_MISMATCH_ERROR"


class RunLockError(IngestionError):
    """Another run holds the lock for this destination and feed"""

    error_type = "RUN_LOCK_ERROR"


class PurgeNotConfirmedError(IngestionError):
    """Purge was requested without explicit operator confirmation"""

    error_type = "PURGE_NOT_CONFIRMED"


__all__ = [
    "IngestionError",
    "ParseError",
    "ValidationError",
    "TransformError",
    "ConfigurationError",
    "BatchPersistError",
    "TransactionError",
    "SchemaMismatchError",
    "RunLockError",
    "PurgeNotConfirmedError",
]

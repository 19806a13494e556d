"""
Library Conversion - Error Types

Every failure the conversion stages can raise. Per-item skips (already
tracked folders, already migrated documents) are not errors; they are
reported as typed results by the stages.
"""

from typing import Any, Dict, Optional


class LibraryConversionError(Exception):
    """Base class for all library conversion errors."""

    code = "library_conversion_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(LibraryConversionError):
    """Input that the conversion cannot accept."""

    code = "validation_error"


class UnsupportedAccessLevelError(ValidationError):
    """A folder snapshot carries an access level with no permission mapping."""

    code = "unsupported_access_level"

    def __init__(self, folder_developer_name: str, access_level: Any):
        super().__init__(
            f"Folder '{folder_developer_name}' has unsupported access level "
            f"{access_level!r}; only ReadOnly and ReadWrite can be converted",
            {"folder_developer_name": folder_developer_name, "access_level": access_level},
        )
        self.folder_developer_name = folder_developer_name
        self.access_level = access_level


class BatchTooLargeError(ValidationError):
    """Input batch exceeds the configured maximum batch size."""

    code = "batch_too_large"

    def __init__(self, stage: str, size: int, max_batch_size: int):
        super().__init__(
            f"{stage} received {size} items, above the maximum batch size of {max_batch_size}",
            {"stage": stage, "size": size, "max_batch_size": max_batch_size},
        )


class DuplicateConversionError(LibraryConversionError):
    """A folder already has a tracking record in the ledger."""

    code = "duplicate_conversion"


class LookupMissError(LibraryConversionError):
    """A document's folder has no provisioned library."""

    code = "lookup_miss"


class PersistenceError(LibraryConversionError):
    """A query or batch write against the store failed."""

    code = "persistence_error"


class DuplicateRecordError(PersistenceError):
    """A batch write hit a unique index."""

    code = "duplicate_record"

    def __init__(self, collection: str, message: str):
        super().__init__(
            f"Duplicate key in {collection}: {message}",
            {"collection": collection},
        )
        self.collection = collection


class ExternalServiceError(LibraryConversionError):
    """The external directory service failed or returned garbage."""

    code = "external_service_error"

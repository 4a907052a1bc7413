"""
Custom exception classes for the Higher Logic to Discourse migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class SourceQueryError(MigrationError):
    """Raised when a legacy page query keeps failing after the configured retries."""


class SchemaMismatchError(MigrationError):
    """Raised when a legacy row lacks a column the importer depends on."""


class CursorOrderError(MigrationError):
    """Raised when a watermark-paged query returns keys out of order."""


class TargetError(MigrationError):
    """Raised when Discourse rejects a single create or update request."""


class TargetConnectionError(MigrationError):
    """Raised when Discourse cannot be reached at all."""

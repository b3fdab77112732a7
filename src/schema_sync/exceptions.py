"""
Custom exceptions for the schema sync engine.

This module defines a hierarchy of exceptions so that callers can tell
capture, archive, planning and execution failures apart, and so that the
retry helper can separate transient failures from terminal rejections.
"""

from typing import List, Optional


class SchemaSyncError(Exception):
    """
    Base exception for all schema sync errors.

    All custom exceptions in the engine inherit from this class.
    """

    pass


class ConfigurationError(SchemaSyncError):
    """
    Raised when there are configuration-related issues.

    This exception is used when:
    - Required configuration parameters are missing
    - Configuration values are invalid
    """

    pass


class SourceUnreachableError(SchemaSyncError):
    """
    Raised when the source registry cannot be listed at all.

    Capture is aborted: there is nothing meaningful to snapshot.
    """

    pass


class SubjectNotFoundError(SchemaSyncError):
    """
    Raised when a requested subject pattern, glob or literal, matches nothing.
    """

    def __init__(self, patterns: List[str]):
        self.patterns = list(patterns)
        super().__init__(
            f"No subject matched: {', '.join(self.patterns)}"
        )


class PartialCaptureError(SchemaSyncError):
    """
    Raised when a strict capture ends with gaps.

    Non-strict captures record gaps on the result instead of raising.
    """

    def __init__(self, gaps):
        self.gaps = list(gaps)
        super().__init__(
            f"Capture incomplete: {len(self.gaps)} version(s) could not be fetched"
        )


class ArchiveError(SchemaSyncError):
    """
    Base class for archive encode/decode problems.
    """

    pass


class MalformedArchiveError(ArchiveError):
    """
    Raised for structurally invalid archive input.

    Covers:
    - Bytes that are not valid JSON
    - A missing or foreign format tag
    - Missing or mistyped fields
    """

    pass


class UnsupportedVersionError(ArchiveError):
    """
    Raised when the archive format version is newer than the codec.
    """

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Archive format version {found} is newer than supported version {supported}"
        )


class ConflictError(SchemaSyncError):
    """
    Raised when a destination already holds a different schema in the
    version slot a migrated version would occupy.
    """

    pass


class RegistryRequestError(SchemaSyncError):
    """
    Raised when the registry rejects a request (HTTP 4xx).

    These are terminal and never retried.

    Attributes:
        status_code: HTTP status code
        error_code: Registry-specific error code from the response body
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[int] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class CompatibilityRejectedError(RegistryRequestError):
    """
    Raised when the destination refuses a schema as incompatible.
    """

    pass


class TransientNetworkError(SchemaSyncError):
    """
    Raised for failures that may succeed on retry.

    These are temporary errors such as:
    - Connection resets and timeouts
    - HTTP 5xx and 429 responses
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ImportModeRequiredError(SchemaSyncError):
    """
    Raised when schema IDs cannot be preserved because the destination
    context is not in IMPORT mode.
    """

    pass


class MigrationCancelledError(SchemaSyncError):
    """
    Raised when a run-scoped cancellation signal interrupts work.
    """

    pass

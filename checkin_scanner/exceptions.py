"""
Custom Exceptions for the Check-in Scanner

This module defines the exception classes used across the scanning
pipeline and the admin services. Each failure domain gets its own class so
that resolver problems, missing participants, business-rule denials and
storage failures are never confused with one another.
"""

from typing import Optional


class CheckinScannerException(Exception):
    """
    Base exception for the Check-in Scanner

    All custom exceptions in the system inherit from this base class
    for consistent error handling.
    """

    def __init__(self, message: str, error_code: Optional[str] = None):
        """
        Initialize Check-in Scanner exception

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def __str__(self) -> str:
        """String representation of the exception"""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class ResolverError(CheckinScannerException):
    """
    Raised when scanned text cannot be turned into a participant key

    The ``kind`` attribute tells the three failure modes apart:
    ``malformed_structured_payload``, ``invalid_identifier_format`` and
    ``missing_required_fields``.
    """

    MALFORMED_STRUCTURED_PAYLOAD = "malformed_structured_payload"
    INVALID_IDENTIFIER_FORMAT = "invalid_identifier_format"
    MISSING_REQUIRED_FIELDS = "missing_required_fields"

    def __init__(self, kind: str, message: str, dni: Optional[str] = None):
        """
        Initialize resolver exception

        Args:
            kind: One of the resolver failure kinds
            message: Human-readable description of the problem
            dni: Best-effort identifier extracted before the failure
        """
        super().__init__(message, kind.upper())
        self.kind = kind
        self.dni = dni


class ParticipantNotFoundException(CheckinScannerException):
    """
    Raised when a participant is not found in the store

    Inside the scan pipeline a missing participant is a normal outcome and
    is converted into a denial; admin services raise this exception.
    """

    def __init__(self, dni: str, event_id: Optional[str] = None):
        """
        Initialize participant not found exception

        Args:
            dni: The identifier that was not found
            event_id: Event partition that was searched
        """
        if event_id:
            message = f"Participant with DNI '{dni}' not found in event '{event_id}'"
        else:
            message = f"Participant with DNI '{dni}' not found"
        super().__init__(message, "PARTICIPANT_NOT_FOUND")
        self.dni = dni
        self.event_id = event_id


class ValidationDenied(CheckinScannerException):
    """Raised when the access decision table denies a scan"""

    def __init__(self, reason: str):
        super().__init__(reason, "ACCESS_DENIED")
        self.reason = reason


class StoreError(CheckinScannerException):
    """
    Raised when a storage operation fails

    This covers the participant store, the access log store and the
    event and user repositories (JSON files, Redis, Google Sheets).
    """

    def __init__(self, operation: str, details: str):
        """
        Initialize store exception

        Args:
            operation: The operation that failed (e.g., 'read', 'append')
            details: Detailed error information
        """
        message = f"Store error during {operation}: {details}"
        super().__init__(message, "STORE_ERROR")
        self.operation = operation
        self.details = details


class StateConflictError(StoreError):
    """
    Raised when a compare-and-set write finds a different stored value

    This happens when another device changed the same presence flag
    between our read and our write.
    """

    def __init__(self, dni: str, field: str, expected, actual):
        details = (
            f"field '{field}' of participant '{dni}' is {actual!r}, "
            f"expected {expected!r}"
        )
        super().__init__("compare_and_set", details)
        self.error_code = "STATE_CONFLICT"
        self.dni = dni
        self.field = field
        self.expected = expected
        self.actual = actual


class AuthenticationFailedException(CheckinScannerException):
    """
    Raised when authentication fails

    This exception is thrown when login credentials are invalid or the
    session refers to a user that no longer exists.
    """

    def __init__(self, login: Optional[str] = None):
        """
        Initialize authentication failed exception

        Args:
            login: Optional email or uid that failed authentication
        """
        if login:
            message = f"Authentication failed for '{login}'"
        else:
            message = "Authentication failed - invalid credentials"
        super().__init__(message, "AUTH_FAILED")
        self.login = login


class PermissionDeniedException(CheckinScannerException):
    """Raised when the acting user's role does not allow an operation"""

    def __init__(self, role: str, action: str):
        message = f"Role '{role}' is not allowed to {action}"
        super().__init__(message, "PERMISSION_DENIED")
        self.role = role
        self.action = action


class DataValidationException(CheckinScannerException):
    """
    Raised when request input or a stored document is invalid

    Covers admin input (empty dni, duplicate email, unknown mode) and user
    or event documents that cannot be loaded.
    """

    def __init__(self, field_name: str, validation_error: str):
        """
        Initialize invalid data exception

        Args:
            field_name: Offending field or document
            validation_error: What is wrong with it
        """
        message = f"Validation error in field '{field_name}': {validation_error}"
        super().__init__(message, "VALIDATION_ERROR")
        self.field_name = field_name
        self.validation_error = validation_error

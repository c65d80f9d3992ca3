"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every error carries the HTTP status it maps to and whether the caller
may retry the same request.
"""

from uuid import UUID


class ServiceError(Exception):
    """Base exception for all service errors."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AuthenticationError(ServiceError):
    """Raised when no credential channel resolves to an account."""

    status_code = 401

    def __init__(self, message: str) -> None:
        super().__init__(f"Authentication failed: {message}")
        self.reason = message


class RefreshTokenError(ServiceError):
    """Raised when a refresh token is invalid or was already rotated."""

    status_code = 403

    def __init__(self, reason: str) -> None:
        super().__init__(f"Refresh token rejected: {reason}")
        self.reason = reason


class InsufficientBalanceError(ServiceError):
    """Raised when account has insufficient balance for a debit."""

    status_code = 403

    def __init__(self, account_id: UUID, balance: int, required: int) -> None:
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")
        self.account_id = account_id
        self.balance = balance
        self.required = required


class ValidationError(ServiceError):
    """Raised when caller-supplied input is malformed."""

    status_code = 400

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Invalid {field}: {message}")
        self.field = field


class AccountExistsError(ServiceError):
    """Raised when signing up with an email that already has an account."""

    status_code = 400

    def __init__(self, email: str) -> None:
        super().__init__("User already exists")
        self.email = email


class ApiKeyConflictError(ServiceError):
    """Raised when an API key is already assigned to a different account."""

    status_code = 409

    def __init__(self, email: str) -> None:
        super().__init__(f"API key already assigned to another account (target {email})")
        self.email = email


class StagedObjectNotFoundError(ServiceError):
    """Raised when a staged object reference does not resolve."""

    status_code = 404

    def __init__(self, key: str) -> None:
        super().__init__(f"Staged object not found: {key}")
        self.key = key


class TransformError(ServiceError):
    """Raised when the image transformation fails."""

    status_code = 500

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(f"Transform failed: {message}")
        self.transient = transient
        self.retryable = transient


class StorageError(ServiceError):
    """Raised when the object store is unreachable or rejects an operation."""

    status_code = 500
    retryable = True

    def __init__(self, operation: str, key: str, message: str) -> None:
        super().__init__(f"Storage {operation} failed for {key}: {message}")
        self.operation = operation
        self.key = key


class WebhookVerificationError(ServiceError):
    """Raised when webhook signature verification fails."""

    status_code = 401

    def __init__(self, message: str) -> None:
        super().__init__(f"Webhook verification error: {message}")


class WebhookProcessingError(ServiceError):
    """Raised when a verified webhook cannot be applied; the provider should redeliver."""

    status_code = 503
    retryable = True

    def __init__(self, fingerprint: str, message: str) -> None:
        super().__init__(f"Webhook {fingerprint[:12]} processing failed: {message}")
        self.fingerprint = fingerprint


class DatabaseError(ServiceError):
    """Raised when database operation fails unexpectedly."""

    status_code = 503
    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(f"Database error: {message}")

"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ImageFormat(str, Enum):
    """Output formats supported by the transformer."""

    WEBP = "webp"
    AVIF = "avif"
    JPEG = "jpeg"
    PNG = "png"

    @property
    def content_type(self) -> str:
        return f"image/{self.value}"


class TransferRoute(str, Enum):
    """How bytes crossed the transport boundary."""

    INLINE = "inline"
    STAGED = "staged"


class StagedObjectPurpose(str, Enum):
    """Why a staged object exists."""

    INPUT = "input"
    RESULT = "result"


class StagedObjectState(str, Enum):
    """Lifecycle state of a staged object."""

    UPLOADED = "uploaded"
    CONSUMED = "consumed"
    DELETED = "deleted"
    ORPHANED = "orphaned"


class WebhookStatus(str, Enum):
    """Terminal states of webhook processing."""

    APPLIED = "applied"
    DEDUPLICATED = "deduplicated"
    IGNORED = "ignored"


def normalize_email(value: str) -> str:
    email = value.strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValueError("must be a valid email address")
    return email


# ============================================================================
# Auth Models
# ============================================================================


class SignupRequest(BaseModel):
    """POST /v1/auth/signup request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return normalize_email(v)


class LoginRequest(BaseModel):
    """POST /v1/auth/login request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return normalize_email(v)


class RefreshRequest(BaseModel):
    """POST /v1/auth/refresh request body."""

    refresh_token: str = Field(..., min_length=1, alias="refreshToken")

    model_config = {"populate_by_name": True}


class UserResponse(BaseModel):
    """Public view of an account."""

    id: str
    email: str
    credits: int
    api_key: str | None = None


class SessionResponse(BaseModel):
    """Signup/login response: tokens plus the account."""

    message: str
    access_token: str
    refresh_token: str
    user: UserResponse


class TokenPairResponse(BaseModel):
    """POST /v1/auth/refresh response."""

    access_token: str
    refresh_token: str


class CreditsResponse(BaseModel):
    """GET /v1/user/credits response."""

    credits: int


# ============================================================================
# Image Models
# ============================================================================


class UploadUrlRequest(BaseModel):
    """POST /v1/images/upload-url request body."""

    filename: str = Field(..., min_length=1, max_length=255)
    content_type: str | None = Field(None, max_length=100, alias="contentType")

    model_config = {"populate_by_name": True}


class UploadUrlResponse(BaseModel):
    """Signed upload target for a staged input."""

    path: str
    upload_url: str


class UploadResponse(BaseModel):
    """POST /v1/images/upload response."""

    path: str


class DeleteRequest(BaseModel):
    """POST /v1/images/delete request body."""

    path: str = Field(..., min_length=1, max_length=1024)


class DeleteResponse(BaseModel):
    success: bool


class OptimizeResponse(BaseModel):
    """POST /v1/images/optimize JSON response (dashboard clients)."""

    message: str
    size_before: int
    size_after: int
    saved_percent: str
    format: ImageFormat
    credits_remaining: int
    file: str | None = None  # data: URL for inline results
    url: str | None = None  # signed URL for staged results
    path: str | None = None  # staged result key, for POST /v1/images/delete


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""

    ok: bool = True
    status: WebhookStatus
    event_type: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: str

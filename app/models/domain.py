"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from app.exceptions import ValidationError
from app.models.api import (
    ImageFormat,
    StagedObjectPurpose,
    StagedObjectState,
    TransferRoute,
    WebhookStatus,
)


@dataclass(frozen=True)
class AccountData:
    """Immutable account data snapshot."""

    account_id: UUID
    email: str
    credits: int
    api_key: str | None
    password_hash: str | None
    refresh_token: str | None
    created_at: datetime
    updated_at: datetime

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.credits < 0:
            raise ValueError(f"Balance cannot be negative: {self.credits}")


@dataclass(frozen=True)
class TokenPair:
    """Access/refresh token pair issued on signup, login and refresh."""

    access_token: str
    refresh_token: str


# ============================================================================
# Credential Resolution
# ============================================================================


@dataclass(frozen=True)
class Credentials:
    """Raw credential material carried by a request."""

    api_key: str | None = None
    bearer_token: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.api_key and not self.bearer_token


@dataclass(frozen=True)
class ResolvedIdentity:
    """Successful resolution: the account and the channel that matched."""

    account: AccountData
    channel: str  # "api_key" or "bearer"


@dataclass(frozen=True)
class ResolutionFailure:
    """Failed resolution with a caller-safe reason."""

    reason: str
    channel: str | None = None


Resolution = ResolvedIdentity | ResolutionFailure


# ============================================================================
# Optimization
# ============================================================================


@dataclass(frozen=True)
class OptimizeOptions:
    """Validated transform parameters."""

    format: ImageFormat = ImageFormat.WEBP
    quality: int = 80

    def __post_init__(self) -> None:
        if not 1 <= self.quality <= 100:
            raise ValidationError("quality", f"must be between 1 and 100, got {self.quality}")

    @classmethod
    def parse(
        cls, raw_format: str | None, raw_quality: str | None, default_quality: int = 80
    ) -> "OptimizeOptions":
        """
        Build options from loosely typed header values.

        Absent or non-numeric quality falls back to the default; a numeric
        value outside 1..100 is rejected.
        """
        image_format = ImageFormat.WEBP
        if raw_format:
            try:
                image_format = ImageFormat(raw_format.strip().lower())
            except ValueError:
                allowed = ", ".join(f.value for f in ImageFormat)
                raise ValidationError("format", f"expected one of {allowed}") from None

        quality = default_quality
        if raw_quality is not None and raw_quality.strip():
            try:
                quality = int(float(raw_quality.strip()))
            except (ValueError, OverflowError):
                quality = default_quality

        return cls(format=image_format, quality=quality)


@dataclass(frozen=True)
class TransferSource:
    """Where the input bytes come from: an inline body or a staged key."""

    inline_bytes: bytes | None = None
    staged_key: str | None = None

    def __post_init__(self) -> None:
        if (self.inline_bytes is None) == (self.staged_key is None):
            raise ValidationError("source", "provide either an inline body or a staged path")


@dataclass(frozen=True)
class AcquiredInput:
    """Input bytes plus how they arrived."""

    data: bytes
    route: TransferRoute
    staged_key: str | None = None


@dataclass(frozen=True)
class PublishedResult:
    """Where the transformed bytes were delivered."""

    route: TransferRoute
    inline_bytes: bytes | None = None
    url: str | None = None
    key: str | None = None


@dataclass(frozen=True)
class OptimizeResult:
    """Result descriptor returned by the optimization coordinator."""

    size_before: int
    size_after: int
    format: ImageFormat
    credits_remaining: int
    published: PublishedResult

    @property
    def saved_percent(self) -> str:
        if self.size_before == 0:
            return "0.0"
        return f"{(self.size_before - self.size_after) / self.size_before * 100:.1f}"


@dataclass(frozen=True)
class StagedObjectRecord:
    """Registry entry for a temporary storage object."""

    key: str
    account_id: UUID
    purpose: StagedObjectPurpose
    state: StagedObjectState
    size_bytes: int | None
    created_at: datetime


# ============================================================================
# Webhooks
# ============================================================================


@dataclass(frozen=True)
class ProviderEvent:
    """Normalized payment provider event."""

    event_type: str
    email: str | None
    plan_id: str | None
    license_key: str | None
    provider_event_id: str | None
    raw_payload: str


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of applying one webhook delivery."""

    status: WebhookStatus
    event_type: str
    fingerprint: str | None = None
    credits_applied: int = 0
    reason: str | None = None

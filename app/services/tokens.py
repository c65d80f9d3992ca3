"""
Token Service - HS256 access/refresh token pairs.

Access and refresh tokens are signed with different secrets and carry a
``typ`` claim, so one can never be presented in place of the other.
"""

import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt

from app.models.domain import TokenPair
from app.observability.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """Verified token claims."""

    account_id: UUID
    token_type: str
    token_id: str
    expires_at: datetime


class TokenService:
    """Issues and verifies session tokens."""

    algorithm = "HS256"

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("Both token secrets are required")
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def issue_pair(self, account_id: UUID) -> TokenPair:
        return TokenPair(
            access_token=self._encode(account_id, ACCESS, self.access_secret, self.access_ttl),
            refresh_token=self._encode(
                account_id, REFRESH, self.refresh_secret, self.refresh_ttl
            ),
        )

    def verify_access(self, token: str) -> TokenClaims | None:
        return self._decode(token, ACCESS, self.access_secret)

    def verify_refresh(self, token: str) -> TokenClaims | None:
        return self._decode(token, REFRESH, self.refresh_secret)

    def _encode(self, account_id: UUID, token_type: str, secret: str, ttl: timedelta) -> str:
        now = datetime.now(UTC)
        payload = {
            "sub": str(account_id),
            "typ": token_type,
            "jti": secrets.token_hex(16),
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, secret, algorithm=self.algorithm)

    def _decode(self, token: str, expected_type: str, secret: str) -> TokenClaims | None:
        """Verify signature, expiry and token type. Returns None when any check fails."""
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={"require": ["sub", "exp", "typ"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("token_expired", token_type=expected_type)
            return None
        except jwt.InvalidTokenError as e:
            logger.warning("token_invalid", token_type=expected_type, error=str(e))
            return None

        if payload.get("typ") != expected_type:
            logger.warning("token_type_mismatch", expected=expected_type, got=payload.get("typ"))
            return None

        try:
            account_id = UUID(str(payload["sub"]))
        except ValueError:
            logger.warning("token_subject_invalid", token_type=expected_type)
            return None

        return TokenClaims(
            account_id=account_id,
            token_type=expected_type,
            token_id=str(payload.get("jti", "")),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=UTC),
        )

"""
Session Service - Password signup/login and refresh-token rotation.

NO DICTIONARIES - Returns typed SessionGrant / TokenPair objects.
"""

import secrets
from dataclasses import dataclass

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from app.exceptions import AuthenticationError, RefreshTokenError, ValidationError
from app.models.api import normalize_email
from app.models.domain import AccountData, TokenPair
from app.observability.logging import get_logger
from app.services.stores import AccountStore
from app.services.tokens import TokenService

logger = get_logger(__name__)

INVALID_LOGIN = "invalid email or password"


@dataclass(frozen=True)
class SessionGrant:
    """Account plus freshly issued tokens."""

    account: AccountData
    tokens: TokenPair


def generate_api_key() -> str:
    """Random opaque API key handed to dashboard signups."""
    return f"pxm_{secrets.token_urlsafe(32)}"


class SessionService:
    """Signup, login and refresh for dashboard users."""

    def __init__(
        self,
        store: AccountStore,
        tokens: TokenService,
        signup_credits: int = 10,
        password_hasher: PasswordHasher | None = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.signup_credits = signup_credits
        self.password_hasher = password_hasher or PasswordHasher()

    async def signup(self, email: str, password: str) -> SessionGrant:
        """
        Create a password account with the signup balance and an API key.

        Raises:
            ValidationError: Missing email or password
            AccountExistsError: Email already registered
        """
        email = self._require_email(email)
        if not password:
            raise ValidationError("password", "is required")

        account = await self.store.create(
            email=email,
            credits=self.signup_credits,
            password_hash=self.password_hasher.hash(password),
            api_key=generate_api_key(),
        )
        pair = self.tokens.issue_pair(account.account_id)
        await self.store.store_refresh_token(account.account_id, pair.refresh_token)

        logger.info("account_signed_up", account_id=str(account.account_id), credits=account.credits)
        return SessionGrant(account=account, tokens=pair)

    async def login(self, email: str, password: str) -> SessionGrant:
        """
        Verify a password and issue a new token pair.

        The new refresh token replaces the stored one.
        """
        email = self._require_email(email)
        if not password:
            raise ValidationError("password", "is required")

        account = await self.store.find_by_email(email)
        if account is None or account.password_hash is None:
            logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError(INVALID_LOGIN)

        try:
            self.password_hasher.verify(account.password_hash, password)
        except VerifyMismatchError:
            logger.info("login_failed", reason="password_mismatch", account_id=str(account.account_id))
            raise AuthenticationError(INVALID_LOGIN) from None
        except (InvalidHashError, VerificationError) as e:
            logger.error("login_hash_unusable", account_id=str(account.account_id), error=str(e))
            raise AuthenticationError(INVALID_LOGIN) from None

        pair = self.tokens.issue_pair(account.account_id)
        await self.store.store_refresh_token(account.account_id, pair.refresh_token)

        logger.info("login_succeeded", account_id=str(account.account_id))
        return SessionGrant(account=account, tokens=pair)

    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Rotate a refresh token.

        The stored token is swapped with a compare-and-swap update, so a
        token that was already rotated can never be used again.

        Raises:
            RefreshTokenError: Invalid, expired or already-rotated token
        """
        if not refresh_token:
            raise ValidationError("refresh_token", "is required")

        claims = self.tokens.verify_refresh(refresh_token)
        if claims is None:
            raise RefreshTokenError("invalid refresh token")

        pair = self.tokens.issue_pair(claims.account_id)
        rotated = await self.store.rotate_refresh_token(
            claims.account_id, presented=refresh_token, replacement=pair.refresh_token
        )
        if not rotated:
            logger.warning("refresh_token_reused", account_id=str(claims.account_id))
            raise RefreshTokenError("refresh token mismatch")

        logger.info("refresh_token_rotated", account_id=str(claims.account_id))
        return pair

    @staticmethod
    def _require_email(email: str) -> str:
        if not email:
            raise ValidationError("email", "is required")
        try:
            return normalize_email(email)
        except ValueError as e:
            raise ValidationError("email", str(e)) from None

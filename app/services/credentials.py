"""
Credential Resolver - Turns request credentials into an account.

Two independent channels are tried in a fixed order: the opaque API key,
then the signed bearer access token. Each resolver returns a
``ResolvedIdentity`` or a ``ResolutionFailure``; none of them raise.
"""

from typing import Protocol

from app.exceptions import AuthenticationError
from app.models.domain import (
    AccountData,
    Credentials,
    Resolution,
    ResolutionFailure,
    ResolvedIdentity,
)
from app.observability.logging import get_logger
from app.services.stores import AccountStore
from app.services.tokens import TokenService

logger = get_logger(__name__)

API_KEY_CHANNEL = "api_key"
BEARER_CHANNEL = "bearer"


class Resolver(Protocol):
    """One credential channel."""

    channel: str

    def applies(self, credentials: Credentials) -> bool: ...

    async def resolve(self, credentials: Credentials) -> Resolution: ...


class ApiKeyResolver:
    """Exact match of the X-API-Key header against stored keys."""

    channel = API_KEY_CHANNEL

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def applies(self, credentials: Credentials) -> bool:
        return bool(credentials.api_key)

    async def resolve(self, credentials: Credentials) -> Resolution:
        assert credentials.api_key is not None
        account = await self.store.find_by_api_key(credentials.api_key)
        if account is None:
            return ResolutionFailure(reason="unknown api key", channel=self.channel)
        return ResolvedIdentity(account=account, channel=self.channel)


class BearerTokenResolver:
    """Signed access token whose subject is an existing account."""

    channel = BEARER_CHANNEL

    def __init__(self, store: AccountStore, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    def applies(self, credentials: Credentials) -> bool:
        return bool(credentials.bearer_token)

    async def resolve(self, credentials: Credentials) -> Resolution:
        assert credentials.bearer_token is not None
        claims = self.tokens.verify_access(credentials.bearer_token)
        if claims is None:
            return ResolutionFailure(reason="invalid or expired token", channel=self.channel)

        account = await self.store.find_by_id(claims.account_id)
        if account is None:
            return ResolutionFailure(reason="unknown account", channel=self.channel)
        return ResolvedIdentity(account=account, channel=self.channel)


class CredentialResolver:
    """Priority-ordered chain of credential resolvers."""

    def __init__(self, resolvers: list[Resolver]) -> None:
        self.resolvers = resolvers

    @classmethod
    def default(cls, store: AccountStore, tokens: TokenService) -> "CredentialResolver":
        return cls([ApiKeyResolver(store), BearerTokenResolver(store, tokens)])

    async def resolve(self, credentials: Credentials) -> Resolution:
        """
        Try each applicable channel in order.

        The first success wins. When every applicable channel fails, the
        failure of the last one tried is returned.
        """
        failure = ResolutionFailure(reason="no credentials")
        for resolver in self.resolvers:
            if not resolver.applies(credentials):
                continue
            resolution = await resolver.resolve(credentials)
            if isinstance(resolution, ResolvedIdentity):
                return resolution
            failure = resolution
        return failure

    async def authenticate(self, credentials: Credentials) -> ResolvedIdentity:
        resolution = await self.resolve(credentials)
        if isinstance(resolution, ResolutionFailure):
            logger.info(
                "authentication_failed", reason=resolution.reason, channel=resolution.channel
            )
            raise AuthenticationError(resolution.reason)
        return resolution

    async def authenticate_account(self, credentials: Credentials) -> AccountData:
        return (await self.authenticate(credentials)).account

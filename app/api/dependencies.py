"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

This is the only layer that reads the global settings; services receive
their configuration through constructor arguments.
"""

from datetime import timedelta

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.session import get_write_db
from app.models.domain import AccountData, Credentials, ResolvedIdentity
from app.services.credentials import CredentialResolver
from app.services.ledger import CreditLedger
from app.services.object_store import ObjectStore, SupabaseObjectStore
from app.services.optimizer import OptimizationService
from app.services.plans import PlanCatalog
from app.services.sessions import SessionService
from app.services.stores import SqlAccountStore, SqlStagedObjectRegistry
from app.services.tokens import TokenService
from app.services.transfers import TransferOrchestrator
from app.services.transform import PillowTransformer, Transformer
from app.services.webhooks import WebhookReconciler

# Bearer token scheme for dashboard sessions
bearer_scheme = HTTPBearer(auto_error=False)

# Process-wide collaborators (hold connection pools / config only)
_object_store: SupabaseObjectStore | None = None
_token_service: TokenService | None = None
_plan_catalog = PlanCatalog()


def get_token_service() -> TokenService:
    global _token_service
    if _token_service is None:
        _token_service = TokenService(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl=timedelta(minutes=settings.access_token_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_days),
        )
    return _token_service


def get_object_store() -> ObjectStore:
    """Shared Supabase client (one httpx connection pool per process)."""
    global _object_store
    if _object_store is None:
        _object_store = SupabaseObjectStore(
            base_url=settings.supabase_url,
            service_role_key=settings.supabase_service_role_key,
            bucket=settings.storage_bucket,
            signed_url_ttl_seconds=settings.result_url_ttl_seconds,
            timeout_seconds=settings.storage_timeout_seconds,
        )
    return _object_store


async def close_object_store() -> None:
    """Close the storage HTTP client (for graceful shutdown)."""
    global _object_store
    if _object_store is not None:
        await _object_store.close()
        _object_store = None


def get_transformer() -> Transformer:
    return PillowTransformer(
        max_width=settings.max_output_width,
        timeout_seconds=settings.transform_timeout_seconds,
    )


def get_plan_catalog() -> PlanCatalog:
    return _plan_catalog


# ============================================================================
# Request-scoped services
# ============================================================================


def get_account_store(db: AsyncSession = Depends(get_write_db)) -> SqlAccountStore:
    return SqlAccountStore(db)


def get_staged_registry(db: AsyncSession = Depends(get_write_db)) -> SqlStagedObjectRegistry:
    return SqlStagedObjectRegistry(db)


def get_credential_resolver(
    store: SqlAccountStore = Depends(get_account_store),
    tokens: TokenService = Depends(get_token_service),
) -> CredentialResolver:
    return CredentialResolver.default(store, tokens)


def get_ledger(store: SqlAccountStore = Depends(get_account_store)) -> CreditLedger:
    return CreditLedger(store)


def get_transfer_orchestrator(
    registry: SqlStagedObjectRegistry = Depends(get_staged_registry),
    objects: ObjectStore = Depends(get_object_store),
) -> TransferOrchestrator:
    return TransferOrchestrator(
        objects=objects,
        registry=registry,
        threshold_bytes=settings.inline_threshold_bytes,
        storage_timeout_seconds=settings.storage_timeout_seconds,
    )


def get_optimization_service(
    resolver: CredentialResolver = Depends(get_credential_resolver),
    ledger: CreditLedger = Depends(get_ledger),
    transfers: TransferOrchestrator = Depends(get_transfer_orchestrator),
    transformer: Transformer = Depends(get_transformer),
) -> OptimizationService:
    return OptimizationService(
        resolver=resolver,
        ledger=ledger,
        transfers=transfers,
        transformer=transformer,
        default_quality=settings.default_quality,
    )


def get_session_service(
    store: SqlAccountStore = Depends(get_account_store),
    tokens: TokenService = Depends(get_token_service),
) -> SessionService:
    return SessionService(store=store, tokens=tokens, signup_credits=settings.signup_credits)


def get_webhook_reconciler(
    store: SqlAccountStore = Depends(get_account_store),
    plans: PlanCatalog = Depends(get_plan_catalog),
) -> WebhookReconciler:
    return WebhookReconciler(
        store=store,
        plans=plans,
        secret=settings.freemius_secret_key,
        unsigned_event_types=settings.unsigned_event_types,
        unsigned_plan_ids=settings.unsigned_plan_ids,
    )


# ============================================================================
# Authentication
# ============================================================================


def get_credentials(
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    bearer: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Credentials:
    """Collect raw credential material from the request headers."""
    return Credentials(
        api_key=x_api_key.strip() if x_api_key and x_api_key.strip() else None,
        bearer_token=bearer.credentials if bearer is not None else None,
    )


async def get_current_identity(
    credentials: Credentials = Depends(get_credentials),
    resolver: CredentialResolver = Depends(get_credential_resolver),
) -> ResolvedIdentity:
    """
    Resolve the caller.

    Raises AuthenticationError (401) when no channel resolves.
    """
    return await resolver.authenticate(credentials)


async def get_current_account(
    identity: ResolvedIdentity = Depends(get_current_identity),
) -> AccountData:
    return identity.account

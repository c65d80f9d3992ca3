"""
API Routes - FastAPI endpoints for auth, images and provider webhooks.

NO DICTIONARIES - All requests/responses use Pydantic models.

Handlers are thin: services raise typed ServiceError subclasses and the
application-level handler maps them to HTTP responses.
"""

import base64
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import (
    get_credentials,
    get_current_account,
    get_optimization_service,
    get_session_service,
    get_transfer_orchestrator,
    get_webhook_reconciler,
)
from app.db.session import get_write_db
from app.models.api import (
    CreditsResponse,
    DeleteRequest,
    DeleteResponse,
    HealthResponse,
    LoginRequest,
    OptimizeResponse,
    RefreshRequest,
    SessionResponse,
    SignupRequest,
    TokenPairResponse,
    UploadResponse,
    UploadUrlRequest,
    UploadUrlResponse,
    UserResponse,
    WebhookAckResponse,
)
from app.models.domain import AccountData, Credentials, OptimizeResult
from app.observability.logging import get_logger
from app.services.credentials import API_KEY_CHANNEL
from app.services.optimizer import OptimizationService
from app.services.sessions import SessionGrant, SessionService
from app.services.transfers import TransferOrchestrator
from app.services.webhooks import SIGNATURE_HEADER, WebhookReconciler

logger = get_logger(__name__)

router = APIRouter()


def _user_response(account: AccountData) -> UserResponse:
    return UserResponse(
        id=str(account.account_id),
        email=account.email,
        credits=account.credits,
        api_key=account.api_key,
    )


def _session_response(message: str, grant: SessionGrant) -> SessionResponse:
    return SessionResponse(
        message=message,
        access_token=grant.tokens.access_token,
        refresh_token=grant.tokens.refresh_token,
        user=_user_response(grant.account),
    )


# =============================================================================
# Auth
# =============================================================================


@router.post("/v1/auth/signup", response_model=SessionResponse)
async def signup(
    request: SignupRequest,
    sessions: SessionService = Depends(get_session_service),
) -> SessionResponse:
    """Create a password account with the signup credit balance."""
    grant = await sessions.signup(request.email, request.password)
    return _session_response("Signup successful", grant)


@router.post("/v1/auth/login", response_model=SessionResponse)
async def login(
    request: LoginRequest,
    sessions: SessionService = Depends(get_session_service),
) -> SessionResponse:
    grant = await sessions.login(request.email, request.password)
    return _session_response("Login successful", grant)


@router.post("/v1/auth/refresh", response_model=TokenPairResponse)
async def refresh(
    request: RefreshRequest,
    sessions: SessionService = Depends(get_session_service),
) -> TokenPairResponse:
    """Rotate the refresh token. A token can be exchanged once."""
    pair = await sessions.refresh(request.refresh_token)
    return TokenPairResponse(access_token=pair.access_token, refresh_token=pair.refresh_token)


# =============================================================================
# User
# =============================================================================


@router.get("/v1/user/me", response_model=UserResponse)
async def me(account: AccountData = Depends(get_current_account)) -> UserResponse:
    return _user_response(account)


@router.get("/v1/user/credits", response_model=CreditsResponse)
async def credits(account: AccountData = Depends(get_current_account)) -> CreditsResponse:
    return CreditsResponse(credits=account.credits)


# =============================================================================
# Images
# =============================================================================


@router.post("/v1/images/upload-url", response_model=UploadUrlResponse)
async def create_upload_url(
    request: UploadUrlRequest,
    account: AccountData = Depends(get_current_account),
    transfers: TransferOrchestrator = Depends(get_transfer_orchestrator),
) -> UploadUrlResponse:
    """
    Reserve a staged input and return a signed URL for a direct upload.

    Pass the returned path as X-Staged-Path to /v1/images/optimize.
    """
    target = await transfers.create_upload_target(account.account_id, request.filename)
    return UploadUrlResponse(path=target.key, upload_url=target.upload_url)


@router.post("/v1/images/upload", response_model=UploadResponse)
async def upload(
    request: Request,
    account: AccountData = Depends(get_current_account),
    transfers: TransferOrchestrator = Depends(get_transfer_orchestrator),
    x_filename: str = Header("upload", alias="X-Filename"),
    content_type: str = Header("application/octet-stream", alias="Content-Type"),
) -> UploadResponse:
    """Stage an input through the API (raw body, filename in X-Filename)."""
    data = await request.body()
    key = await transfers.upload(account.account_id, x_filename, data, content_type)
    return UploadResponse(path=key)


@router.post(
    "/v1/images/optimize",
    response_model=OptimizeResponse,
    responses={200: {"content": {"image/*": {}}}},
)
async def optimize(
    request: Request,
    credentials: Credentials = Depends(get_credentials),
    service: OptimizationService = Depends(get_optimization_service),
    x_format: str | None = Header(None, alias="X-Format"),
    x_quality: str | None = Header(None, alias="X-Quality"),
    x_staged_path: str | None = Header(None, alias="X-Staged-Path"),
) -> Response | OptimizeResponse:
    """
    Optimize one image and debit one credit.

    Small images are sent as the raw request body. Large ones are uploaded
    first and referenced with X-Staged-Path. API-key callers receive small
    results as raw bytes; everyone else gets JSON with a data URL or a
    signed download URL.
    """
    body = await request.body()
    identity, result = await service.optimize_request(
        credentials,
        body=body,
        staged_key=x_staged_path.strip() if x_staged_path else None,
        raw_format=x_format,
        raw_quality=x_quality,
    )

    published = result.published
    if identity.channel == API_KEY_CHANNEL and published.inline_bytes is not None:
        return Response(
            content=published.inline_bytes,
            media_type=result.format.content_type,
            headers={
                "Content-Disposition": f'attachment; filename="optimized.{result.format.value}"',
                "X-Size-Before": str(result.size_before),
                "X-Size-After": str(result.size_after),
                "X-Credits-Remaining": str(result.credits_remaining),
            },
        )
    return _optimize_response(result)


def _optimize_response(result: OptimizeResult) -> OptimizeResponse:
    published = result.published
    data_url = None
    if published.inline_bytes is not None:
        encoded = base64.b64encode(published.inline_bytes).decode("ascii")
        data_url = f"data:{result.format.content_type};base64,{encoded}"

    return OptimizeResponse(
        message="Image optimized successfully",
        size_before=result.size_before,
        size_after=result.size_after,
        saved_percent=result.saved_percent,
        format=result.format,
        credits_remaining=result.credits_remaining,
        file=data_url,
        url=published.url,
        path=published.key,
    )


@router.post("/v1/images/delete", response_model=DeleteResponse)
async def delete_image(
    request: DeleteRequest,
    account: AccountData = Depends(get_current_account),
    transfers: TransferOrchestrator = Depends(get_transfer_orchestrator),
) -> DeleteResponse:
    """Release a downloaded result (or an unused staged input)."""
    await transfers.release(account.account_id, request.path)
    return DeleteResponse(success=True)


# =============================================================================
# Webhooks
# =============================================================================


@router.post("/v1/webhooks/freemius", response_model=WebhookAckResponse)
async def freemius_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> WebhookAckResponse:
    """
    Apply a Freemius event.

    Signed with HMAC-SHA256 of the raw body in X-FS-Signature. Duplicate
    deliveries are acknowledged without being applied again.
    """
    raw = await request.body()
    outcome = await reconciler.apply(raw, request.headers.get(SIGNATURE_HEADER))
    return WebhookAckResponse(status=outcome.status, event_type=outcome.event_type)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_write_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database disconnected",
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )

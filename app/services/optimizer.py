"""
Optimization Service - Coordinates one metered transform.

Sequence: resolve identity -> balance pre-check -> acquire input ->
transform -> debit one credit -> publish result. Nothing is debited unless
the transform succeeded, and a debit that loses a race discards the output.
"""

import time

from app.exceptions import InsufficientBalanceError, ServiceError
from app.models.domain import (
    AccountData,
    Credentials,
    OptimizeOptions,
    OptimizeResult,
    ResolvedIdentity,
    TransferSource,
)
from app.observability.logging import get_logger
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.credentials import CredentialResolver
from app.services.ledger import CreditLedger
from app.services.transfers import TransferOrchestrator
from app.services.transform import Transformer

logger = get_logger(__name__)

CREDITS_PER_OPERATION = 1


class OptimizationService:
    """Metered image optimization façade."""

    def __init__(
        self,
        resolver: CredentialResolver,
        ledger: CreditLedger,
        transfers: TransferOrchestrator,
        transformer: Transformer,
        default_quality: int = 80,
    ) -> None:
        self.resolver = resolver
        self.ledger = ledger
        self.transfers = transfers
        self.transformer = transformer
        self.default_quality = default_quality

    async def optimize_request(
        self,
        credentials: Credentials,
        body: bytes,
        staged_key: str | None,
        raw_format: str | None,
        raw_quality: str | None,
    ) -> tuple[ResolvedIdentity, OptimizeResult]:
        """
        Entry point for the HTTP layer.

        Authentication is checked before any input is validated, so an
        anonymous caller always gets 401.
        """
        identity = await self.resolver.authenticate(credentials)
        options = OptimizeOptions.parse(raw_format, raw_quality, self.default_quality)
        source = TransferSource(
            inline_bytes=body if body or not staged_key else None,
            staged_key=staged_key or None,
        )
        result = await self.optimize(identity.account, source, options)
        return identity, result

    async def optimize(
        self, account: AccountData, source: TransferSource, options: OptimizeOptions
    ) -> OptimizeResult:
        """
        Raises:
            InsufficientBalanceError: No spendable credit, before or at debit time
            ValidationError / StagedObjectNotFoundError: Bad input reference
            TransformError: Transform failed or timed out (nothing debited)
            StorageError: Fetch failed, or publication failed after the debit
        """
        image_format = options.format.value
        route = "staged" if source.staged_key is not None else "inline"

        with trace_operation(
            "optimize",
            account_id=str(account.account_id),
            format=image_format,
            quality=options.quality,
            route=route,
        ) as span:
            if not self.ledger.has_spendable_credit(account):
                metrics.record_optimization(route, image_format, "insufficient_balance")
                logger.info("optimize_refused_no_credit", account_id=str(account.account_id))
                raise InsufficientBalanceError(
                    account.account_id, account.credits, CREDITS_PER_OPERATION
                )

            try:
                acquired = await self.transfers.acquire(account.account_id, source)

                started = time.perf_counter()
                output = await self.transformer.transform(
                    acquired.data, options.format, options.quality
                )
                duration = time.perf_counter() - started
            except ServiceError as e:
                metrics.record_optimization(route, image_format, "failed")
                metrics.record_error(type(e).__name__, "optimize")
                raise

            try:
                debited = await self.ledger.debit(account.account_id, CREDITS_PER_OPERATION)
            except InsufficientBalanceError:
                metrics.record_optimization(route, image_format, "insufficient_balance")
                logger.warning(
                    "optimize_output_discarded",
                    account_id=str(account.account_id),
                    size_after=len(output),
                )
                raise

            published = await self.transfers.publish(account.account_id, output, options.format)

            result = OptimizeResult(
                size_before=len(acquired.data),
                size_after=len(output),
                format=options.format,
                credits_remaining=debited.credits,
                published=published,
            )
            metrics.record_optimization(
                acquired.route.value,
                image_format,
                "success",
                duration=duration,
                bytes_saved=result.size_before - result.size_after,
            )
            span.set_attribute("size_before", result.size_before)
            span.set_attribute("size_after", result.size_after)
            logger.info(
                "optimize_completed",
                account_id=str(account.account_id),
                route=acquired.route.value,
                result_route=published.route.value,
                format=image_format,
                size_before=result.size_before,
                size_after=result.size_after,
                credits_remaining=result.credits_remaining,
                duration_seconds=round(duration, 3),
            )
            return result

"""
Webhook Reconciler - Freemius events into idempotent ledger mutations.

NO DICTIONARIES - The raw payload is normalized into a ProviderEvent before
any business logic sees it.

Per delivery: received -> signature-checked -> rejected | deduplicated |
applied | ignored. The fingerprint row and the ledger mutation share one
database transaction, so a delivery is applied at most once and a failed
mutation leaves nothing behind for the redelivery to trip over.
"""

import hashlib
import hmac
import json
from typing import Any

from app.exceptions import (
    ApiKeyConflictError,
    DatabaseError,
    ValidationError,
    WebhookProcessingError,
    WebhookVerificationError,
)
from app.models.api import WebhookStatus, normalize_email
from app.models.domain import ProviderEvent, WebhookOutcome
from app.observability.logging import get_logger
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.ledger import CreditLedger
from app.services.plans import FREE_PLAN_ID, PlanCatalog
from app.services.stores import AccountStore

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-FS-Signature"

CREDIT_EVENTS = frozenset({"subscription.created", "payment.completed"})
LICENSE_EVENT = "license.activated"
USER_CREATED_EVENT = "user.created"

# Column sizes of webhook_events and accounts
MAX_EVENT_TYPE_LENGTH = 100
MAX_FIELD_LENGTH = 255


def _dig(payload: Any, *path: str) -> Any:
    """Walk nested objects, returning None at the first missing step."""
    current = payload
    for step in path:
        if not isinstance(current, dict):
            return None
        current = current.get(step)
    return current


def _first_text(payload: dict[str, Any], *paths: tuple[str, ...]) -> str | None:
    for path in paths:
        value = _dig(payload, *path)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _check_length(field: str, value: str | None, limit: int) -> None:
    if value is not None and len(value) > limit:
        raise ValidationError(field, f"longer than {limit} characters")


def parse_event(raw: bytes) -> ProviderEvent:
    """
    Normalize a Freemius payload.

    Raises:
        ValidationError: Body is not a JSON object, has no event type, or a
            field exceeds its stored length
    """
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError("payload", f"malformed JSON: {e}") from None
    if not isinstance(payload, dict):
        raise ValidationError("payload", "expected a JSON object")

    event_type = _first_text(payload, ("type",), ("event",))
    if event_type is None:
        raise ValidationError("type", "event type is missing")

    email = _first_text(payload, ("user", "email"), ("objects", "user", "email"))
    if email is not None:
        try:
            email = normalize_email(email)
        except ValueError:
            email = None

    license_key = _first_text(payload, ("license", "key"), ("objects", "license", "secret_key"))
    provider_event_id = _first_text(payload, ("id",))

    _check_length("type", event_type, MAX_EVENT_TYPE_LENGTH)
    _check_length("email", email, MAX_FIELD_LENGTH)
    _check_length("id", provider_event_id, MAX_FIELD_LENGTH)
    _check_length("license", license_key, MAX_FIELD_LENGTH)

    return ProviderEvent(
        event_type=event_type,
        email=email,
        plan_id=_first_text(payload, ("plan_id",), ("plan", "id"), ("objects", "plan", "id")),
        license_key=license_key,
        provider_event_id=provider_event_id,
        raw_payload=raw.decode("utf-8", errors="replace"),
    )


def event_fingerprint(event: ProviderEvent) -> str:
    """
    Deduplication key for a delivery.

    Uses the provider event ID when present, otherwise a hash of the exact
    payload, so retries of the same delivery always collide.
    """
    discriminator = event.provider_event_id or hashlib.sha256(
        event.raw_payload.encode("utf-8")
    ).hexdigest()
    material = "\n".join([event.event_type, event.email or "", discriminator])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def sign_payload(secret: str, raw: bytes) -> str:
    """Hex HMAC-SHA256 of the raw body, as Freemius sends it."""
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


class WebhookReconciler:
    """Verifies Freemius deliveries and applies them to the ledger once."""

    def __init__(
        self,
        store: AccountStore,
        plans: PlanCatalog,
        secret: str,
        unsigned_event_types: frozenset[str] = frozenset({USER_CREATED_EVENT}),
        unsigned_plan_ids: frozenset[str] = frozenset({FREE_PLAN_ID}),
    ) -> None:
        self.store = store
        self.plans = plans
        self.secret = secret
        self.unsigned_event_types = unsigned_event_types
        self.unsigned_plan_ids = unsigned_plan_ids
        self.ledger = CreditLedger(store)

    async def apply(self, raw: bytes, signature: str | None) -> WebhookOutcome:
        """
        Verify, deduplicate and apply one delivery.

        Raises:
            WebhookVerificationError: Bad signature, or unsigned event whose type or plan
                is not allow-listed
            ValidationError: Malformed payload
            WebhookProcessingError: Store failure; the provider should redeliver
        """
        with trace_operation("webhook_apply", signed=bool(signature)) as span:
            if signature:
                self._verify_signature(raw, signature)
                event = parse_event(raw)
            else:
                event = parse_event(raw)
                self._accept_unsigned(event)
            span.set_attribute("event_type", event.event_type)

            if event.email is None:
                logger.info("webhook_ignored_missing_email", event_type=event.event_type)
                metrics.record_webhook(event.event_type, WebhookStatus.IGNORED.value)
                return WebhookOutcome(
                    status=WebhookStatus.IGNORED,
                    event_type=event.event_type,
                    reason="no user email",
                )

            fingerprint = event_fingerprint(event)
            try:
                outcome = await self._apply_once(event, fingerprint)
            except DatabaseError as e:
                logger.error(
                    "webhook_processing_failed",
                    event_type=event.event_type,
                    fingerprint=fingerprint,
                    error=e.message,
                )
                metrics.record_webhook(event.event_type, "failed")
                raise WebhookProcessingError(fingerprint, e.message) from e

            span.set_attribute("outcome", outcome.status.value)
            metrics.record_webhook(event.event_type, outcome.status.value)
            logger.info(
                "webhook_processed",
                event_type=event.event_type,
                fingerprint=fingerprint,
                status=outcome.status.value,
                credits_applied=outcome.credits_applied,
                reason=outcome.reason,
            )
            return outcome

    # ========================================================================
    # Verification
    # ========================================================================

    def _verify_signature(self, raw: bytes, signature: str) -> None:
        if not self.secret:
            logger.error("webhook_secret_not_configured")
            metrics.record_webhook("unknown", "rejected")
            raise WebhookVerificationError("webhook secret not configured")

        expected = sign_payload(self.secret, raw)
        presented = signature.strip().lower()
        if not hmac.compare_digest(expected.encode("ascii"), presented.encode("utf-8")):
            logger.warning("webhook_signature_invalid")
            metrics.record_webhook("unknown", "rejected")
            raise WebhookVerificationError("invalid signature")

    def _accept_unsigned(self, event: ProviderEvent) -> None:
        if event.event_type not in self.unsigned_event_types:
            logger.warning("webhook_signature_missing", event_type=event.event_type)
            metrics.record_webhook(event.event_type, "rejected")
            raise WebhookVerificationError("missing signature")
        if event.plan_id not in self.unsigned_plan_ids:
            logger.warning(
                "webhook_unsigned_plan_rejected",
                event_type=event.event_type,
                plan_id=event.plan_id,
            )
            metrics.record_webhook(event.event_type, "rejected")
            raise WebhookVerificationError(f"plan {event.plan_id} requires a signature")
        logger.info(
            "webhook_unsigned_accepted",
            event_type=event.event_type,
            email=event.email,
            provider_event_id=event.provider_event_id,
        )

    # ========================================================================
    # Application
    # ========================================================================

    async def _apply_once(self, event: ProviderEvent, fingerprint: str) -> WebhookOutcome:
        async with self.store.transaction():
            claimed = await self.store.claim_event(
                fingerprint=fingerprint,
                event_type=event.event_type,
                provider_event_id=event.provider_event_id,
                email=event.email,
                raw_payload=event.raw_payload,
            )
            if not claimed:
                return WebhookOutcome(
                    status=WebhookStatus.DEDUPLICATED,
                    event_type=event.event_type,
                    fingerprint=fingerprint,
                )

            outcome = await self._dispatch(event, fingerprint)
            await self.store.complete_event(
                fingerprint, outcome.status.value, outcome.credits_applied
            )
            return outcome

    async def _dispatch(self, event: ProviderEvent, fingerprint: str) -> WebhookOutcome:
        assert event.email is not None

        if event.event_type in CREDIT_EVENTS:
            credits = self.plans.credits_for(event.plan_id)
            if credits == 0:
                return self._ignored(event, fingerprint, f"unknown plan {event.plan_id}")
            await self._credit(event.email, credits, event.license_key)
            metrics.record_credit_addition(event.event_type, credits)
            return WebhookOutcome(
                status=WebhookStatus.APPLIED,
                event_type=event.event_type,
                fingerprint=fingerprint,
                credits_applied=credits,
            )

        if event.event_type == LICENSE_EVENT:
            if event.license_key is None:
                return self._ignored(event, fingerprint, "no license key")
            try:
                account = await self.store.assign_api_key(event.email, event.license_key)
            except ApiKeyConflictError:
                logger.warning("license_key_conflict", email=event.email)
                return self._ignored(event, fingerprint, "license key owned by another account")
            if account is None:
                return self._ignored(event, fingerprint, "no such account")
            return WebhookOutcome(
                status=WebhookStatus.APPLIED,
                event_type=event.event_type,
                fingerprint=fingerprint,
            )

        if event.event_type == USER_CREATED_EVENT:
            credits = self.plans.credits_for(event.plan_id)
            if credits == 0:
                return self._ignored(event, fingerprint, f"unknown plan {event.plan_id}")
            account = await self.ledger.provision(event.email, credits)
            if account is None:
                return self._ignored(event, fingerprint, "account already exists")
            metrics.record_credit_addition(event.event_type, credits)
            return WebhookOutcome(
                status=WebhookStatus.APPLIED,
                event_type=event.event_type,
                fingerprint=fingerprint,
                credits_applied=credits,
            )

        return self._ignored(event, fingerprint, "unhandled event type")

    async def _credit(self, email: str, credits: int, license_key: str | None) -> None:
        try:
            await self.ledger.credit(email, credits, new_api_key=license_key)
        except ApiKeyConflictError:
            logger.warning("license_key_conflict_credit_without_key", email=email)
            await self.ledger.credit(email, credits, new_api_key=None)

    @staticmethod
    def _ignored(event: ProviderEvent, fingerprint: str, reason: str) -> WebhookOutcome:
        return WebhookOutcome(
            status=WebhookStatus.IGNORED,
            event_type=event.event_type,
            fingerprint=fingerprint,
            reason=reason,
        )

"""
Credit Ledger - Spendable balance with atomic debit and credit.

NO DICTIONARIES - All operations use strongly typed domain models.

Balance changes are delegated to single conditional statements in the
AccountStore. The ledger never reads a balance to decide a write, and it
does not deduplicate; webhook replay protection lives in the reconciler.
"""

from uuid import UUID

from app.exceptions import InsufficientBalanceError, ValidationError
from app.models.domain import AccountData
from app.observability.logging import get_logger
from app.observability.metrics import metrics
from app.services.stores import AccountStore

logger = get_logger(__name__)


class CreditLedger:
    """Debit/credit operations over an AccountStore."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def has_spendable_credit(self, account: AccountData) -> bool:
        """Pre-check only. The debit itself is the point of truth."""
        return account.credits >= 1

    async def debit(self, account_id: UUID, amount: int = 1) -> AccountData:
        """
        Subtract credits if the balance covers them.

        Returns the account with its new balance.

        Raises:
            ValidationError: Non-positive amount
            InsufficientBalanceError: Balance lower than amount (nothing written)
        """
        self._require_positive(amount)

        account = await self.store.atomic_decrement_balance(account_id, amount)
        if account is None:
            metrics.record_debit(success=False)
            current = await self.store.find_by_id(account_id)
            current_balance = current.credits if current is not None else 0
            logger.warning(
                "debit_refused",
                account_id=str(account_id),
                balance=current_balance,
                required=amount,
            )
            raise InsufficientBalanceError(account_id, current_balance, amount)

        metrics.record_debit(success=True)
        logger.info(
            "debit_applied", account_id=str(account_id), amount=amount, balance=account.credits
        )
        return account

    async def credit(self, email: str, amount: int, new_api_key: str | None = None) -> AccountData:
        """
        Add credits to the account for ``email``, creating it if needed.

        ``new_api_key`` is stored only when the account has no key yet.
        """
        self._require_positive(amount)

        account = await self.store.upsert_credits(email, amount, api_key=new_api_key)
        logger.info(
            "credit_applied",
            account_id=str(account.account_id),
            amount=amount,
            balance=account.credits,
        )
        return account

    async def provision(self, email: str, amount: int) -> AccountData | None:
        """
        Create a zero-history account holding ``amount`` credits.

        Returns None, and changes nothing, when the account already exists.
        """
        if amount < 0:
            raise ValidationError("amount", f"must not be negative, got {amount}")

        account = await self.store.provision(email, amount)
        if account is None:
            logger.info("provision_skipped_existing", email=email)
        else:
            logger.info("account_provisioned", account_id=str(account.account_id), credits=amount)
        return account

    @staticmethod
    def _require_positive(amount: int) -> None:
        if amount <= 0:
            raise ValidationError("amount", f"must be positive, got {amount}")

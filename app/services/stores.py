"""
Stores - Account and staged-object persistence behind narrow protocols.

NO DICTIONARIES - All reads return immutable domain dataclasses.

Every balance mutation is a single conditional statement executed by
PostgreSQL. Nothing here reads a balance and writes it back.
"""

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Account, StagedObject, WebhookEvent, utc_now
from app.exceptions import AccountExistsError, ApiKeyConflictError, DatabaseError
from app.models.api import StagedObjectPurpose, StagedObjectState
from app.models.domain import AccountData, StagedObjectRecord
from app.observability.logging import get_logger

logger = get_logger(__name__)


class AccountStore(Protocol):
    """Persistence for accounts, refresh tokens and the webhook log."""

    async def find_by_api_key(self, api_key: str) -> AccountData | None: ...

    async def find_by_email(self, email: str) -> AccountData | None: ...

    async def find_by_id(self, account_id: UUID) -> AccountData | None: ...

    async def create(
        self,
        email: str,
        credits: int,
        password_hash: str | None = None,
        api_key: str | None = None,
    ) -> AccountData:
        """Insert a new account with a set balance. Raises AccountExistsError."""
        ...

    async def upsert_credits(
        self, email: str, amount: int, api_key: str | None = None
    ) -> AccountData:
        """
        Increment the balance, creating the account when the email is new.

        The key is only stored when the account has none. Raises
        ApiKeyConflictError when the key belongs to another account.
        """
        ...

    async def provision(self, email: str, credits: int) -> AccountData | None:
        """Create the account if absent. Returns None when it already existed."""
        ...

    async def atomic_decrement_balance(
        self, account_id: UUID, amount: int
    ) -> AccountData | None:
        """Return the updated account, or None when the balance was too low."""
        ...

    async def atomic_increment_balance(
        self, account_id: UUID, amount: int
    ) -> AccountData | None:
        """Return the updated account, or None when the account does not exist."""
        ...

    async def assign_api_key(self, email: str, api_key: str) -> AccountData | None: ...

    async def store_refresh_token(self, account_id: UUID, refresh_token: str) -> None: ...

    async def rotate_refresh_token(
        self, account_id: UUID, presented: str, replacement: str
    ) -> bool:
        """Swap the stored token only if it still equals the presented one."""
        ...

    async def claim_event(
        self,
        fingerprint: str,
        event_type: str,
        provider_event_id: str | None,
        email: str | None,
        raw_payload: str,
    ) -> bool:
        """Record a webhook fingerprint. Returns False if it was already recorded."""
        ...

    async def complete_event(self, fingerprint: str, outcome: str, credits_applied: int) -> None: ...

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Group calls into one database transaction."""
        ...


class StagedObjectRegistry(Protocol):
    """Bookkeeping for temporary objects in the storage bucket."""

    async def register(
        self,
        key: str,
        account_id: UUID,
        purpose: StagedObjectPurpose,
        size_bytes: int | None = None,
    ) -> StagedObjectRecord: ...

    async def get(self, key: str) -> StagedObjectRecord | None: ...

    async def mark(self, key: str, state: StagedObjectState) -> None: ...

    async def latest_result(self, account_id: UUID) -> StagedObjectRecord | None: ...

    async def list_orphans(
        self, stale_before: datetime | None = None, limit: int = 100
    ) -> list[StagedObjectRecord]: ...


def _account_to_domain(account: Account) -> AccountData:
    """Convert ORM account to domain model."""
    return AccountData(
        account_id=account.id,
        email=account.email,
        credits=account.credits,
        api_key=account.api_key,
        password_hash=account.password_hash,
        refresh_token=account.refresh_token,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def _staged_to_domain(row: StagedObject) -> StagedObjectRecord:
    """Convert ORM staged object to domain model."""
    return StagedObjectRecord(
        key=row.key,
        account_id=row.account_id,
        purpose=StagedObjectPurpose(row.purpose),
        state=StagedObjectState(row.state),
        size_bytes=row.size_bytes,
        created_at=row.created_at,
    )


class SqlAccountStore:
    """
    AccountStore over an async SQLAlchemy session.

    Outside of ``transaction()`` every call commits on its own. Inside it,
    calls share one transaction that commits when the outermost block exits
    cleanly and rolls back otherwise.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._depth = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                await self.session.rollback()
            raise
        self._depth -= 1
        if self._depth == 0:
            await self._commit()

    # ========================================================================
    # Lookups
    # ========================================================================

    async def find_by_api_key(self, api_key: str) -> AccountData | None:
        return await self._find_one(select(Account).where(Account.api_key == api_key))

    async def find_by_email(self, email: str) -> AccountData | None:
        return await self._find_one(select(Account).where(Account.email == email))

    async def find_by_id(self, account_id: UUID) -> AccountData | None:
        return await self._find_one(select(Account).where(Account.id == account_id))

    # ========================================================================
    # Account creation
    # ========================================================================

    async def create(
        self,
        email: str,
        credits: int,
        password_hash: str | None = None,
        api_key: str | None = None,
    ) -> AccountData:
        account = Account(
            email=email,
            credits=credits,
            password_hash=password_hash,
            api_key=api_key,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(account)
        except IntegrityError as e:
            logger.warning("account_create_conflict", email=email, error=str(e.orig))
            raise AccountExistsError(email) from e
        except SQLAlchemyError as e:
            raise DatabaseError(str(e)) from e

        await self._autocommit()
        return _account_to_domain(account)

    async def provision(self, email: str, credits: int) -> AccountData | None:
        stmt = (
            pg_insert(Account)
            .values(email=email, credits=credits)
            .on_conflict_do_nothing(index_elements=[Account.email])
            .returning(Account)
            .execution_options(populate_existing=True)
        )
        result = await self._execute(stmt)
        account = result.scalar_one_or_none()
        await self._autocommit()
        return _account_to_domain(account) if account is not None else None

    # ========================================================================
    # Balance mutations
    # ========================================================================

    async def upsert_credits(
        self, email: str, amount: int, api_key: str | None = None
    ) -> AccountData:
        insert_stmt = pg_insert(Account).values(email=email, credits=amount, api_key=api_key)
        stmt = (
            insert_stmt.on_conflict_do_update(
                index_elements=[Account.email],
                set_={
                    Account.credits: Account.credits + insert_stmt.excluded.credits,
                    Account.api_key: func.coalesce(Account.api_key, insert_stmt.excluded.api_key),
                    Account.updated_at: utc_now(),
                },
            )
            .returning(Account)
            .execution_options(populate_existing=True)
        )
        try:
            async with self.session.begin_nested():
                result = await self.session.execute(stmt)
                account = result.scalar_one()
        except IntegrityError as e:
            # Only the unique api_key index can fail here; email conflicts are upserted
            raise ApiKeyConflictError(email) from e
        except (SQLAlchemyError, OSError) as e:
            raise DatabaseError(str(e)) from e

        await self._autocommit()
        return _account_to_domain(account)

    async def atomic_decrement_balance(
        self, account_id: UUID, amount: int
    ) -> AccountData | None:
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.credits >= amount)
            .values(credits=Account.credits - amount, updated_at=utc_now())
            .returning(Account)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self._execute(stmt)
        account = result.scalar_one_or_none()
        await self._autocommit()
        return _account_to_domain(account) if account is not None else None

    async def atomic_increment_balance(
        self, account_id: UUID, amount: int
    ) -> AccountData | None:
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(credits=Account.credits + amount, updated_at=utc_now())
            .returning(Account)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        result = await self._execute(stmt)
        account = result.scalar_one_or_none()
        await self._autocommit()
        return _account_to_domain(account) if account is not None else None

    # ========================================================================
    # Credentials
    # ========================================================================

    async def assign_api_key(self, email: str, api_key: str) -> AccountData | None:
        stmt = (
            update(Account)
            .where(Account.email == email)
            .values(api_key=api_key, updated_at=utc_now())
            .returning(Account)
            .execution_options(synchronize_session=False, populate_existing=True)
        )
        try:
            async with self.session.begin_nested():
                result = await self.session.execute(stmt)
                account = result.scalar_one_or_none()
        except IntegrityError as e:
            raise ApiKeyConflictError(email) from e
        except (SQLAlchemyError, OSError) as e:
            raise DatabaseError(str(e)) from e

        await self._autocommit()
        return _account_to_domain(account) if account is not None else None

    async def store_refresh_token(self, account_id: UUID, refresh_token: str) -> None:
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(refresh_token=refresh_token, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self._execute(stmt)
        await self._autocommit()

    async def rotate_refresh_token(
        self, account_id: UUID, presented: str, replacement: str
    ) -> bool:
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.refresh_token == presented)
            .values(refresh_token=replacement, updated_at=utc_now())
            .returning(Account.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        rotated = result.scalar_one_or_none() is not None
        await self._autocommit()
        return rotated

    # ========================================================================
    # Webhook log
    # ========================================================================

    async def claim_event(
        self,
        fingerprint: str,
        event_type: str,
        provider_event_id: str | None,
        email: str | None,
        raw_payload: str,
    ) -> bool:
        stmt = (
            pg_insert(WebhookEvent)
            .values(
                fingerprint=fingerprint,
                event_type=event_type,
                provider_event_id=provider_event_id,
                email=email,
                raw_payload=raw_payload,
            )
            .on_conflict_do_nothing(index_elements=[WebhookEvent.fingerprint])
            .returning(WebhookEvent.fingerprint)
        )
        result = await self._execute(stmt)
        claimed = result.scalar_one_or_none() is not None
        await self._autocommit()
        return claimed

    async def complete_event(self, fingerprint: str, outcome: str, credits_applied: int) -> None:
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.fingerprint == fingerprint)
            .values(outcome=outcome, credits_applied=credits_applied, processed_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self._execute(stmt)
        await self._autocommit()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_one(self, stmt: Any) -> AccountData | None:
        result = await self._execute(stmt.execution_options(populate_existing=True))
        account = result.scalar_one_or_none()
        return _account_to_domain(account) if account is not None else None

    async def _execute(self, stmt: Any) -> Any:
        try:
            return await self.session.execute(stmt)
        except (SQLAlchemyError, OSError) as e:
            logger.error("database_statement_failed", error=str(e))
            raise DatabaseError(str(e)) from e

    async def _autocommit(self) -> None:
        if self._depth == 0:
            await self._commit()

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except (SQLAlchemyError, OSError) as e:
            await self.session.rollback()
            logger.error("database_commit_failed", error=str(e))
            raise DatabaseError(str(e)) from e


class SqlStagedObjectRegistry:
    """StagedObjectRegistry over an async SQLAlchemy session. Every call commits."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def register(
        self,
        key: str,
        account_id: UUID,
        purpose: StagedObjectPurpose,
        size_bytes: int | None = None,
    ) -> StagedObjectRecord:
        insert_stmt = pg_insert(StagedObject).values(
            key=key,
            account_id=account_id,
            purpose=purpose.value,
            state=StagedObjectState.UPLOADED.value,
            size_bytes=size_bytes,
        )
        stmt = (
            insert_stmt.on_conflict_do_update(
                index_elements=[StagedObject.key],
                set_={
                    StagedObject.state: StagedObjectState.UPLOADED.value,
                    StagedObject.size_bytes: insert_stmt.excluded.size_bytes,
                    StagedObject.updated_at: utc_now(),
                },
            )
            .returning(StagedObject)
            .execution_options(populate_existing=True)
        )
        result = await self._run(stmt)
        row = result.scalar_one()
        await self._commit()
        return _staged_to_domain(row)

    async def get(self, key: str) -> StagedObjectRecord | None:
        stmt = (
            select(StagedObject)
            .where(StagedObject.key == key)
            .execution_options(populate_existing=True)
        )
        result = await self._run(stmt)
        row = result.scalar_one_or_none()
        return _staged_to_domain(row) if row is not None else None

    async def mark(self, key: str, state: StagedObjectState) -> None:
        stmt = (
            update(StagedObject)
            .where(StagedObject.key == key)
            .values(state=state.value, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self._run(stmt)
        await self._commit()

    async def latest_result(self, account_id: UUID) -> StagedObjectRecord | None:
        stmt = (
            select(StagedObject)
            .where(
                StagedObject.account_id == account_id,
                StagedObject.purpose == StagedObjectPurpose.RESULT.value,
                StagedObject.state == StagedObjectState.UPLOADED.value,
            )
            .order_by(StagedObject.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._run(stmt)
        row = result.scalar_one_or_none()
        return _staged_to_domain(row) if row is not None else None

    async def list_orphans(
        self, stale_before: datetime | None = None, limit: int = 100
    ) -> list[StagedObjectRecord]:
        """
        Objects whose delete failed, plus uploads never consumed.

        Uploads only count when created before ``stale_before``.
        """
        condition = StagedObject.state == StagedObjectState.ORPHANED.value
        if stale_before is not None:
            condition = condition | (
                (StagedObject.state == StagedObjectState.UPLOADED.value)
                & (StagedObject.created_at < stale_before)
            )
        stmt = (
            select(StagedObject)
            .where(condition)
            .order_by(StagedObject.created_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._run(stmt)
        return [_staged_to_domain(row) for row in result.scalars().all()]

    async def _run(self, stmt: Any) -> Any:
        try:
            return await self.session.execute(stmt)
        except (SQLAlchemyError, OSError) as e:
            logger.error("staged_registry_statement_failed", error=str(e))
            raise DatabaseError(str(e)) from e

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except (SQLAlchemyError, OSError) as e:
            await self.session.rollback()
            raise DatabaseError(str(e)) from e

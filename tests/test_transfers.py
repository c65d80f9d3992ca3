"""
Tests for TransferOrchestrator.

Covers the inline/staged threshold, guaranteed cleanup of staged inputs,
result replacement and orphan tracking.
"""

import asyncio
from datetime import UTC, datetime
from uuid import uuid4

import pytest

from app.exceptions import StagedObjectNotFoundError, StorageError, ValidationError
from app.models.api import ImageFormat, StagedObjectPurpose, StagedObjectState, TransferRoute
from app.models.domain import TransferSource
from app.services.transfers import TransferOrchestrator, safe_filename
from conftest import FakeObjectStore, FakeRegistry

MIB = 1024 * 1024


@pytest.fixture
def transfers(object_store: FakeObjectStore, registry: FakeRegistry) -> TransferOrchestrator:
    return TransferOrchestrator(objects=object_store, registry=registry, threshold_bytes=4 * MIB)


async def stage_input(
    transfers: TransferOrchestrator, account_id, size: int = 5 * MIB
) -> str:
    return await transfers.upload(account_id, "photo.png", b"\x00" * size, "image/png")


class TestRouting:
    def test_threshold_boundary(self, transfers: TransferOrchestrator):
        assert transfers.route_for(4 * MIB - 1) is TransferRoute.INLINE
        assert transfers.route_for(4 * MIB) is TransferRoute.STAGED

    def test_threshold_must_be_positive(
        self, object_store: FakeObjectStore, registry: FakeRegistry
    ):
        with pytest.raises(ValueError):
            TransferOrchestrator(objects=object_store, registry=registry, threshold_bytes=0)


class TestAcquireInline:
    async def test_small_body_inline(self, transfers: TransferOrchestrator):
        acquired = await transfers.acquire(uuid4(), TransferSource(inline_bytes=b"\x00" * (3 * MIB)))
        assert acquired.route is TransferRoute.INLINE
        assert len(acquired.data) == 3 * MIB

    async def test_large_body_rejected(self, transfers: TransferOrchestrator):
        with pytest.raises(ValidationError):
            await transfers.acquire(uuid4(), TransferSource(inline_bytes=b"\x00" * (4 * MIB)))

    async def test_empty_body_rejected(self, transfers: TransferOrchestrator):
        with pytest.raises(ValidationError):
            await transfers.acquire(uuid4(), TransferSource(inline_bytes=b""))


class TestAcquireStaged:
    async def test_staged_input_deleted_after_fetch(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        account_id = uuid4()
        key = await stage_input(transfers, account_id)
        assert key.startswith(f"raw/{account_id}/")

        acquired = await transfers.acquire(account_id, TransferSource(staged_key=key))

        assert acquired.route is TransferRoute.STAGED
        assert len(acquired.data) == 5 * MIB
        assert key not in object_store.objects
        assert registry.state_of(key) is StagedObjectState.DELETED

    async def test_staged_input_consumed_once(self, transfers: TransferOrchestrator):
        account_id = uuid4()
        key = await stage_input(transfers, account_id)
        await transfers.acquire(account_id, TransferSource(staged_key=key))

        with pytest.raises(StagedObjectNotFoundError):
            await transfers.acquire(account_id, TransferSource(staged_key=key))

    async def test_other_accounts_key_rejected(
        self, transfers: TransferOrchestrator, object_store: FakeObjectStore
    ):
        key = await stage_input(transfers, uuid4())

        with pytest.raises(StagedObjectNotFoundError):
            await transfers.acquire(uuid4(), TransferSource(staged_key=key))
        assert key in object_store.objects

    async def test_unregistered_key_rejected(self, transfers: TransferOrchestrator):
        with pytest.raises(StagedObjectNotFoundError):
            await transfers.acquire(uuid4(), TransferSource(staged_key="raw/x/y.png"))

    async def test_object_missing_from_bucket(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        account_id = uuid4()
        key = await stage_input(transfers, account_id)
        object_store.objects.pop(key)

        with pytest.raises(StagedObjectNotFoundError):
            await transfers.acquire(account_id, TransferSource(staged_key=key))
        assert registry.state_of(key) is StagedObjectState.DELETED
        assert key not in object_store.deleted

    async def test_fetch_failure_still_deletes(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        account_id = uuid4()
        key = await stage_input(transfers, account_id)
        object_store.fail_get = True

        with pytest.raises(StorageError):
            await transfers.acquire(account_id, TransferSource(staged_key=key))
        assert key in object_store.deleted
        assert registry.state_of(key) is StagedObjectState.DELETED

    async def test_failed_delete_marks_orphan(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        account_id = uuid4()
        key = await stage_input(transfers, account_id)
        object_store.fail_delete = True

        acquired = await transfers.acquire(account_id, TransferSource(staged_key=key))

        assert len(acquired.data) == 5 * MIB
        assert registry.state_of(key) is StagedObjectState.ORPHANED

    async def test_delete_timeout_marks_orphan(
        self, object_store: FakeObjectStore, registry: FakeRegistry
    ):
        transfers = TransferOrchestrator(
            objects=object_store, registry=registry, storage_timeout_seconds=0.01
        )
        account_id = uuid4()
        key = await stage_input(transfers, account_id)

        async def hang(key: str) -> None:
            await asyncio.sleep(1)

        object_store.delete = hang
        await transfers.acquire(account_id, TransferSource(staged_key=key))
        assert registry.state_of(key) is StagedObjectState.ORPHANED


class TestUpload:
    async def test_empty_upload_rejected(self, transfers: TransferOrchestrator):
        with pytest.raises(ValidationError):
            await transfers.upload(uuid4(), "a.png", b"", "image/png")

    async def test_failed_put_cleans_up(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        object_store.fail_put = True
        with pytest.raises(StorageError):
            await transfers.upload(uuid4(), "a.png", b"data", "image/png")

        [record] = registry.records.values()
        assert record.state is StagedObjectState.DELETED

    async def test_upload_target(self, transfers: TransferOrchestrator, registry: FakeRegistry):
        account_id = uuid4()
        target = await transfers.create_upload_target(account_id, "../../etc/passwd")

        assert target.key.startswith(f"raw/{account_id}/")
        assert target.key.endswith("-passwd")
        assert target.upload_url.endswith(target.key)
        assert registry.records[target.key].purpose is StagedObjectPurpose.INPUT


class TestPublish:
    async def test_small_result_inline(
        self, transfers: TransferOrchestrator, object_store: FakeObjectStore
    ):
        published = await transfers.publish(uuid4(), b"\x01" * 1024, ImageFormat.WEBP)
        assert published.route is TransferRoute.INLINE
        assert published.inline_bytes == b"\x01" * 1024
        assert object_store.objects == {}

    async def test_large_result_staged(
        self, transfers: TransferOrchestrator, object_store: FakeObjectStore
    ):
        account_id = uuid4()
        published = await transfers.publish(account_id, b"\x01" * (4 * MIB), ImageFormat.AVIF)

        assert published.route is TransferRoute.STAGED
        assert published.key.startswith(f"results/{account_id}/")
        assert published.key.endswith(".avif")
        assert published.url == f"https://storage.test/signed/{published.key}"
        assert published.key in object_store.objects

    async def test_new_result_replaces_previous(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        account_id = uuid4()
        first = await transfers.publish(account_id, b"\x01" * (4 * MIB), ImageFormat.WEBP)
        second = await transfers.publish(account_id, b"\x02" * (4 * MIB), ImageFormat.WEBP)

        assert first.key not in object_store.objects
        assert registry.state_of(first.key) is StagedObjectState.DELETED
        assert second.key in object_store.objects

    async def test_failed_put_cleans_up(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        object_store.fail_put = True
        with pytest.raises(StorageError):
            await transfers.publish(uuid4(), b"\x01" * (4 * MIB), ImageFormat.WEBP)

        [record] = registry.records.values()
        assert record.state is StagedObjectState.DELETED


class TestRelease:
    async def test_owner_can_delete(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        account_id = uuid4()
        published = await transfers.publish(account_id, b"\x01" * (4 * MIB), ImageFormat.WEBP)

        await transfers.release(account_id, published.key)

        assert published.key not in object_store.objects
        assert registry.state_of(published.key) is StagedObjectState.DELETED

    async def test_release_is_idempotent(self, transfers: TransferOrchestrator):
        account_id = uuid4()
        published = await transfers.publish(account_id, b"\x01" * (4 * MIB), ImageFormat.WEBP)
        await transfers.release(account_id, published.key)
        await transfers.release(account_id, published.key)

    async def test_other_account_cannot_delete(self, transfers: TransferOrchestrator):
        published = await transfers.publish(uuid4(), b"\x01" * (4 * MIB), ImageFormat.WEBP)
        with pytest.raises(StagedObjectNotFoundError):
            await transfers.release(uuid4(), published.key)

    async def test_failed_delete_raises_and_orphans(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        account_id = uuid4()
        published = await transfers.publish(account_id, b"\x01" * (4 * MIB), ImageFormat.WEBP)
        object_store.fail_delete = True

        with pytest.raises(StorageError):
            await transfers.release(account_id, published.key)
        assert registry.state_of(published.key) is StagedObjectState.ORPHANED


class TestSweep:
    async def test_sweep_retries_orphans(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        account_id = uuid4()
        key = await stage_input(transfers, account_id)
        object_store.fail_delete = True
        await transfers.acquire(account_id, TransferSource(staged_key=key))
        assert registry.state_of(key) is StagedObjectState.ORPHANED

        object_store.fail_delete = False
        report = await transfers.sweep()

        assert (report.examined, report.deleted, report.failed) == (1, 1, 0)
        assert registry.state_of(key) is StagedObjectState.DELETED

    async def test_sweep_includes_stale_uploads(
        self, transfers: TransferOrchestrator, registry: FakeRegistry
    ):
        key = await stage_input(transfers, uuid4(), size=10)

        assert (await transfers.sweep()).examined == 0
        report = await transfers.sweep(stale_before=datetime(2100, 1, 1, tzinfo=UTC))
        assert report.deleted == 1
        assert registry.state_of(key) is StagedObjectState.DELETED

    async def test_sweep_counts_failures(
        self,
        transfers: TransferOrchestrator,
        object_store: FakeObjectStore,
        registry: FakeRegistry,
    ):
        await stage_input(transfers, uuid4(), size=10)
        object_store.fail_delete = True

        report = await transfers.sweep(stale_before=datetime(2100, 1, 1, tzinfo=UTC))

        assert report.failed == 1
        [record] = registry.records.values()
        assert record.state is StagedObjectState.ORPHANED


class TestSafeFilename:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("photo.png", "photo.png"),
            ("C:\\Users\\me\\My Photo.jpg", "My-Photo.jpg"),
            ("../../secret", "secret"),
            ("...", "upload"),
            ("", "upload"),
        ],
    )
    def test_sanitized(self, raw: str, expected: str):
        assert safe_filename(raw) == expected

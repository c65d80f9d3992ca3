"""
Transfer Orchestrator - Inline vs staged handling of image bytes.

Payloads below the threshold travel in the request/response body. Anything
at or above it goes through the temporary storage bucket, and every staged
object this service takes ownership of is deleted on the way out. A delete
that fails leaves the object marked ``orphaned`` for the sweeper.
"""

import asyncio
import re
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar
from uuid import UUID, uuid4

from app.exceptions import DatabaseError, StagedObjectNotFoundError, StorageError, ValidationError
from app.models.api import ImageFormat, StagedObjectPurpose, StagedObjectState, TransferRoute
from app.models.domain import AcquiredInput, PublishedResult, TransferSource
from app.observability.logging import get_logger
from app.observability.metrics import metrics
from app.services.object_store import ObjectStore
from app.services.stores import StagedObjectRegistry

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_THRESHOLD_BYTES = 4 * 1024 * 1024

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: str) -> str:
    """Reduce a client filename to a storage-safe basename."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_FILENAME_CHARS.sub("-", basename).strip(".-")
    return cleaned[:100] or "upload"


@dataclass(frozen=True)
class UploadTarget:
    """Where the client should PUT a staged input."""

    key: str
    upload_url: str


@dataclass(frozen=True)
class SweepReport:
    """Outcome of one orphan sweep."""

    examined: int
    deleted: int
    failed: int


class TransferOrchestrator:
    """Owns the lifecycle of staged inputs and published results."""

    def __init__(
        self,
        objects: ObjectStore,
        registry: StagedObjectRegistry,
        threshold_bytes: int = DEFAULT_THRESHOLD_BYTES,
        storage_timeout_seconds: float = 20.0,
    ) -> None:
        if threshold_bytes <= 0:
            raise ValueError(f"Threshold must be positive: {threshold_bytes}")
        self.objects = objects
        self.registry = registry
        self.threshold_bytes = threshold_bytes
        self.storage_timeout_seconds = storage_timeout_seconds

    def route_for(self, size_bytes: int) -> TransferRoute:
        return TransferRoute.INLINE if size_bytes < self.threshold_bytes else TransferRoute.STAGED

    # ========================================================================
    # Staged inputs
    # ========================================================================

    async def create_upload_target(self, account_id: UUID, filename: str) -> UploadTarget:
        """Reserve an input key and return a signed URL for a direct upload."""
        key = self._input_key(account_id, filename)
        upload_url = await self._bounded(
            "upload_url", key, self.objects.create_upload_url(key)
        )
        await self.registry.register(key, account_id, StagedObjectPurpose.INPUT)
        logger.info("upload_target_created", account_id=str(account_id), key=key)
        return UploadTarget(key=key, upload_url=upload_url)

    async def upload(
        self, account_id: UUID, filename: str, data: bytes, content_type: str
    ) -> str:
        """Stage an input sent through the API. Returns its key."""
        if not data:
            raise ValidationError("file", "no file uploaded")
        key = self._input_key(account_id, filename)
        await self.registry.register(
            key, account_id, StagedObjectPurpose.INPUT, size_bytes=len(data)
        )
        try:
            await self._bounded("put", key, self.objects.put(key, data, content_type))
        except StorageError:
            await self._cleanup(key, StagedObjectPurpose.INPUT)
            raise
        logger.info("input_staged", account_id=str(account_id), key=key, size_bytes=len(data))
        return key

    async def acquire(self, account_id: UUID, source: TransferSource) -> AcquiredInput:
        """
        Produce the input bytes for a transform.

        A staged input is deleted as soon as it has been fetched, before
        this method returns, whether or not the transform later succeeds.

        Raises:
            ValidationError: Inline body at or above the threshold
            StagedObjectNotFoundError: Unknown key, another account's key, or missing object
            StorageError: Fetch failed
        """
        if source.inline_bytes is not None:
            size = len(source.inline_bytes)
            if not size:
                raise ValidationError("body", "empty image")
            if self.route_for(size) is TransferRoute.STAGED:
                raise ValidationError(
                    "body",
                    f"{size} bytes exceeds the inline limit of {self.threshold_bytes}; "
                    "upload to staged storage and pass X-Staged-Path",
                )
            return AcquiredInput(data=source.inline_bytes, route=TransferRoute.INLINE)

        assert source.staged_key is not None
        key = source.staged_key
        record = await self.registry.get(key)
        if (
            record is None
            or record.account_id != account_id
            or record.purpose is not StagedObjectPurpose.INPUT
            or record.state is not StagedObjectState.UPLOADED
        ):
            logger.warning("staged_input_rejected", account_id=str(account_id), key=key)
            raise StagedObjectNotFoundError(key)

        missing = False
        try:
            data = await self._bounded("get", key, self.objects.get(key))
            await self._mark(key, StagedObjectState.CONSUMED)
        except StagedObjectNotFoundError:
            missing = True
            await self._mark(key, StagedObjectState.DELETED)
            raise
        finally:
            if not missing:
                await self._cleanup(key, StagedObjectPurpose.INPUT)

        logger.info("staged_input_fetched", key=key, size_bytes=len(data))
        return AcquiredInput(data=data, route=TransferRoute.STAGED, staged_key=key)

    # ========================================================================
    # Results
    # ========================================================================

    async def publish(
        self, account_id: UUID, data: bytes, image_format: ImageFormat
    ) -> PublishedResult:
        """
        Deliver transform output.

        Small results stay inline. Large ones replace the account's previous
        staged result and are returned as a signed URL.
        """
        if self.route_for(len(data)) is TransferRoute.INLINE:
            return PublishedResult(route=TransferRoute.INLINE, inline_bytes=data)

        previous = await self.registry.latest_result(account_id)
        if previous is not None:
            await self._cleanup(previous.key, StagedObjectPurpose.RESULT)

        key = f"results/{account_id}/{uuid4().hex}.{image_format.value}"
        await self.registry.register(
            key, account_id, StagedObjectPurpose.RESULT, size_bytes=len(data)
        )
        try:
            url = await self._bounded(
                "put", key, self.objects.put(key, data, image_format.content_type)
            )
        except StorageError:
            await self._cleanup(key, StagedObjectPurpose.RESULT)
            raise

        logger.info("result_published", account_id=str(account_id), key=key, size_bytes=len(data))
        return PublishedResult(route=TransferRoute.STAGED, url=url, key=key)

    async def release(self, account_id: UUID, key: str) -> None:
        """
        Delete a staged object on the owner's request.

        Raises:
            StagedObjectNotFoundError: Unknown key or owned by another account
            StorageError: Delete failed; the object is left marked orphaned
        """
        record = await self.registry.get(key)
        if record is None or record.account_id != account_id:
            raise StagedObjectNotFoundError(key)
        if record.state is StagedObjectState.DELETED:
            return
        if not await self._cleanup(key, record.purpose):
            raise StorageError("delete", key, "delete failed, object marked orphaned")

    async def sweep(self, stale_before: datetime | None = None, limit: int = 100) -> SweepReport:
        """Retry deletion of orphaned objects and abandoned uploads."""
        records = await self.registry.list_orphans(stale_before=stale_before, limit=limit)
        deleted = 0
        for record in records:
            if await self._delete(record.key, record.purpose):
                deleted += 1
        report = SweepReport(examined=len(records), deleted=deleted, failed=len(records) - deleted)
        logger.info(
            "orphan_sweep_completed",
            examined=report.examined,
            deleted=report.deleted,
            failed=report.failed,
        )
        return report

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _input_key(account_id: UUID, filename: str) -> str:
        return f"raw/{account_id}/{uuid4().hex}-{safe_filename(filename)}"

    async def _bounded(self, operation: str, key: str, call: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.storage_timeout_seconds)
        except TimeoutError as e:
            logger.error("storage_call_timeout", operation=operation, key=key)
            raise StorageError(operation, key, "timed out") from e

    async def _cleanup(self, key: str, purpose: StagedObjectPurpose) -> bool:
        """Delete shielded from cancellation of the calling request."""
        return await asyncio.shield(self._delete(key, purpose))

    async def _delete(self, key: str, purpose: StagedObjectPurpose) -> bool:
        try:
            await self._bounded("delete", key, self.objects.delete(key))
        except StorageError as e:
            logger.error("staged_object_orphaned", key=key, purpose=purpose.value, error=e.message)
            metrics.record_staged_cleanup(purpose.value, success=False)
            await self._mark(key, StagedObjectState.ORPHANED)
            return False

        metrics.record_staged_cleanup(purpose.value, success=True)
        await self._mark(key, StagedObjectState.DELETED)
        return True

    async def _mark(self, key: str, state: StagedObjectState) -> None:
        try:
            await self.registry.mark(key, state)
        except DatabaseError as e:
            # Storage already reflects the outcome; only bookkeeping is stale
            logger.error("staged_registry_update_failed", key=key, state=state.value, error=e.message)

"""
Object Store - Temporary storage for staged inputs and large results.

The default implementation talks to the Supabase Storage REST API with
httpx using the service role key.
"""

from typing import Any, Protocol
from urllib.parse import quote

import httpx

from app.exceptions import StagedObjectNotFoundError, StorageError
from app.observability.logging import get_logger

logger = get_logger(__name__)


class ObjectStore(Protocol):
    """Minimal object storage interface."""

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """
        Store bytes under key.

        Returns:
            Short-lived signed download URL

        Raises:
            StorageError: Write or signing failed
        """
        ...

    async def get(self, key: str) -> bytes:
        """
        Raises:
            StagedObjectNotFoundError: No object under key
            StorageError: Any other failure
        """
        ...

    async def delete(self, key: str) -> None:
        """Raises StorageError. Deleting a missing key is not an error."""
        ...

    async def create_upload_url(self, key: str) -> str:
        """Signed URL the client can upload to directly."""
        ...


class SupabaseObjectStore:
    """Supabase Storage bucket accessed over REST."""

    def __init__(
        self,
        base_url: str,
        service_role_key: str,
        bucket: str = "temp-uploads",
        signed_url_ttl_seconds: int = 600,
        timeout_seconds: float = 20.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_role_key = service_role_key
        self.bucket = bucket
        self.signed_url_ttl_seconds = signed_url_ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.service_role_key}",
            "apikey": self.service_role_key,
        }

    def _object_path(self, key: str) -> str:
        return f"{quote(self.bucket)}/{quote(key, safe='/')}"

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        url = f"{self.base_url}/storage/v1/object/{self._object_path(key)}"
        headers = {**self._headers, "Content-Type": content_type, "x-upsert": "true"}
        response = await self._send("put", key, "POST", url, headers=headers, content=data)
        self._raise_for_status("put", key, response)
        logger.info("storage_object_written", key=key, size_bytes=len(data))
        return await self._sign_download(key)

    async def get(self, key: str) -> bytes:
        url = f"{self.base_url}/storage/v1/object/{self._object_path(key)}"
        response = await self._send("get", key, "GET", url, headers=self._headers)
        if self._is_not_found(response):
            raise StagedObjectNotFoundError(key)
        self._raise_for_status("get", key, response)
        return response.content

    async def delete(self, key: str) -> None:
        url = f"{self.base_url}/storage/v1/object/{quote(self.bucket)}"
        response = await self._send(
            "delete", key, "DELETE", url, headers=self._headers, json={"prefixes": [key]}
        )
        if self._is_not_found(response):
            return
        self._raise_for_status("delete", key, response)
        logger.info("storage_object_deleted", key=key)

    async def create_upload_url(self, key: str) -> str:
        url = f"{self.base_url}/storage/v1/object/upload/sign/{self._object_path(key)}"
        response = await self._send("upload_url", key, "POST", url, headers=self._headers)
        self._raise_for_status("upload_url", key, response)
        signed = self._json_field("upload_url", key, response, "url")
        return f"{self.base_url}/storage/v1{signed}"

    async def _sign_download(self, key: str) -> str:
        url = f"{self.base_url}/storage/v1/object/sign/{self._object_path(key)}"
        response = await self._send(
            "sign",
            key,
            "POST",
            url,
            headers=self._headers,
            json={"expiresIn": self.signed_url_ttl_seconds},
        )
        self._raise_for_status("sign", key, response)
        signed = self._json_field("sign", key, response, "signedURL")
        return f"{self.base_url}/storage/v1{signed}"

    async def _send(
        self,
        operation: str,
        key: str,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await self.http_client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("storage_timeout", operation=operation, key=key)
            raise StorageError(operation, key, "timed out") from e
        except httpx.HTTPError as e:
            logger.error("storage_unreachable", operation=operation, key=key, error=str(e))
            raise StorageError(operation, key, str(e)) from e

    @staticmethod
    def _is_not_found(response: httpx.Response) -> bool:
        if response.status_code == 404:
            return True
        # Storage API reports missing objects as 400 with a not_found payload
        if response.status_code == 400:
            body = response.text.lower()
            return "not_found" in body or "not found" in body
        return False

    @staticmethod
    def _raise_for_status(operation: str, key: str, response: httpx.Response) -> None:
        if response.is_success:
            return
        logger.error(
            "storage_request_failed",
            operation=operation,
            key=key,
            status_code=response.status_code,
            body=response.text[:200],
        )
        raise StorageError(operation, key, f"HTTP {response.status_code}")

    @staticmethod
    def _json_field(operation: str, key: str, response: httpx.Response, field: str) -> str:
        try:
            value = response.json()[field]
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(operation, key, f"unexpected response: missing {field}") from e
        if not isinstance(value, str) or not value:
            raise StorageError(operation, key, f"unexpected response: empty {field}")
        return value if value.startswith("/") else f"/{value}"

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

"""
Object storage client for uploaded voice samples (Supabase storage API).
Hands out short-lived signed URLs and downloads the uploaded audio.
"""

from __future__ import annotations

import time
from typing import Optional

import httpx
import structlog

from futureself.config import Settings
from futureself.errors import StorageFailure

log = structlog.get_logger(__name__)

DEFAULT_CONTENT_TYPE = "audio/mpeg"


class ObjectStorage:
    """Signed-URL access to the voice-sample bucket."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.bucket = settings.voice_bucket
        self.base_url = settings.supabase_url.rstrip("/")
        self.headers = {
            "apikey": settings.supabase_secret_key,
            "Authorization": f"Bearer {settings.supabase_secret_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=60.0, transport=self._transport)
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    def object_key(self, storage_path: str) -> str:
        """Strip a leading ``<bucket>/`` so keys are bucket-relative."""
        key = storage_path.lstrip("/")
        prefix = f"{self.bucket}/"
        return key[len(prefix):] if key.startswith(prefix) else key

    async def _post(self, path: str, body: dict) -> dict:
        client = await self._client()
        try:
            resp = await client.post(f"{self.base_url}/storage/v1{path}", json=body, headers=self.headers)
        except httpx.HTTPError as e:
            raise StorageFailure(f"Storage unreachable: {e}") from e
        if resp.status_code >= 400:
            log.error("storage_request_failed", path=path, status=resp.status_code, body=resp.text[:300])
            raise StorageFailure(f"Storage request failed: {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            log.error("storage_response_not_json", path=path, body=resp.text[:300])
            raise StorageFailure("Storage returned a non-JSON response") from e
        if not isinstance(data, dict):
            raise StorageFailure("Storage returned an unexpected response")
        return data

    async def create_upload_url(self, user_id: str) -> tuple[str, str]:
        """Return ``(absolute signed upload URL, storage path)`` for a fresh object."""
        key = f"{user_id}/{int(time.time() * 1000)}.webm"
        data = await self._post(f"/object/upload/sign/{self.bucket}/{key}", {})
        url = data.get("url") or data.get("signedURL")
        if not url:
            raise StorageFailure("No upload URL returned from storage")
        return f"{self.base_url}/storage/v1{url}", f"{self.bucket}/{key}"

    async def create_download_url(self, storage_path: str) -> str:
        key = self.object_key(storage_path)
        data = await self._post(
            f"/object/sign/{self.bucket}/{key}",
            {"expiresIn": self.settings.signed_url_ttl_seconds},
        )
        signed = data.get("signedURL") or data.get("signedUrl")
        if not signed:
            raise StorageFailure("Failed to create signed URL for audio file")
        return f"{self.base_url}/storage/v1{signed}"

    async def download(self, url: str) -> tuple[bytes, str]:
        """Fetch the object behind a signed URL. Returns ``(bytes, content_type)``."""
        client = await self._client()
        try:
            resp = await client.get(url)
        except httpx.HTTPError as e:
            raise StorageFailure(f"Failed to download audio file: {e}") from e
        if resp.status_code >= 400:
            raise StorageFailure(f"Failed to download audio file: {resp.status_code}")
        content_type = resp.headers.get("content-type") or DEFAULT_CONTENT_TYPE
        return resp.content, content_type

    async def fetch_voice_sample(self, storage_path: str) -> tuple[bytes, str]:
        url = await self.create_download_url(storage_path)
        return await self.download(url)

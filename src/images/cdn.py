"""Sirv CDN client that re-hosts generated images under the account's upload folder."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from threading import Lock
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from src.core.config import get_settings
from src.core.logger import get_logger


logger = get_logger("eden.images.cdn")

_TOKEN_REFRESH_MARGIN = timedelta(seconds=60)


class CDNUploadError(RuntimeError):
    """Raised when the CDN rejects a token request, download or upload."""


class ImageUploader(Protocol):
    def upload_from_url(self, source_url: str, filename: str) -> str:
        raise NotImplementedError


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class SirvUploader:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        api_base_url: str = "https://api.sirv.com/v2",
        public_base_url: str = "",
        upload_folder: str = "/eden/generated",
        timeout_seconds: int = 30,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.api_base_url = api_base_url.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/")
        self.upload_folder = "/" + upload_folder.strip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        self._lock = Lock()

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.public_base_url)

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._client is not None:
                return self._client.request(method, url, **kwargs)
            with httpx.Client(timeout=self.timeout_seconds, follow_redirects=True) as client:
                return client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise CDNUploadError(f"sirv_request_failed {method} {url}") from exc

    def _access_token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token and self._token_expires_at and now < self._token_expires_at:
                return self._token
            if not self.client_id or not self.client_secret:
                raise CDNUploadError("sirv_credentials_missing")

            response = self._request(
                "POST",
                f"{self.api_base_url}/token",
                json={"clientId": self.client_id, "clientSecret": self.client_secret},
            )
            if response.status_code >= 400:
                raise CDNUploadError(f"sirv_token_failed status={response.status_code}")
            try:
                payload: Dict[str, Any] = response.json()
            except ValueError as exc:
                raise CDNUploadError("sirv_token_invalid_json") from exc
            token = str(payload.get("token") or "")
            if not token:
                raise CDNUploadError("sirv_token_missing")
            expires_in = int(payload.get("expiresIn") or 1200)
            self._token = token
            self._token_expires_at = now + timedelta(seconds=expires_in) - _TOKEN_REFRESH_MARGIN
            return token

    def upload_bytes(self, content: bytes, filename: str) -> str:
        if not self.public_base_url:
            raise CDNUploadError("sirv_public_base_url_missing")
        path = f"{self.upload_folder}/{filename.lstrip('/')}"
        token = self._access_token()
        response = self._request(
            "POST",
            f"{self.api_base_url}/files/upload",
            params={"filename": path},
            content=content,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/octet-stream"},
        )
        if response.status_code >= 400:
            raise CDNUploadError(f"sirv_upload_failed status={response.status_code}")
        public_url = f"{self.public_base_url}{path}"
        logger.info("sirv_upload_completed", path=path, size_bytes=len(content))
        return public_url

    def upload_from_url(self, source_url: str, filename: str) -> str:
        response = self._request("GET", source_url)
        if response.status_code >= 400:
            raise CDNUploadError(f"image_download_failed status={response.status_code}")
        return self.upload_bytes(response.content, filename)


@lru_cache(maxsize=1)
def get_image_uploader() -> Optional[SirvUploader]:
    """The configured uploader, or None when CDN re-hosting is off."""

    settings = get_settings()
    uploader = SirvUploader(
        client_id=settings.sirv_client_id,
        client_secret=settings.sirv_client_secret,
        api_base_url=settings.sirv_api_base_url,
        public_base_url=settings.sirv_public_base_url,
        upload_folder=settings.sirv_upload_folder,
    )
    if settings.ai_demo_mode or not uploader.configured:
        return None
    return uploader


def reset_uploader_cache() -> None:
    get_image_uploader.cache_clear()

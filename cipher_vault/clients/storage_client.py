"""HTTP boundary to the content-addressed pinning provider."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from ..config import StorageProviderConfig
from ..exceptions import StorageDownloadFailed, StorageUploadFailed

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


@dataclass
class PinningStorageClient:
    """Uploads ciphertext, fetches it back by content id and re-pins it.

    Only ciphertext ever crosses this boundary. Calls are single attempts;
    retry is the caller's decision.
    """

    config: StorageProviderConfig
    http_client: object = requests

    @property
    def is_configured(self) -> bool:
        return bool(self.config.jwt)

    def upload(self, ciphertext: bytes, name_hint: str, on_progress: Optional[ProgressCallback] = None) -> str:
        if not self.is_configured:
            raise StorageUploadFailed("Storage provider credentials are not configured")
        if len(ciphertext) > self.config.max_file_bytes:
            raise StorageUploadFailed(
                f"Payload of {len(ciphertext)} bytes exceeds the {self.config.max_file_bytes} byte limit"
            )
        _report(on_progress, 10)
        metadata = {"name": f"{name_hint}.encrypted"}
        try:
            response = self.http_client.post(
                self._url("/pinning/pinFileToIPFS"),
                headers=self._headers(),
                files={"file": (f"{name_hint}.encrypted", ciphertext, "application/octet-stream")},
                data={
                    "pinataMetadata": json.dumps(metadata),
                    "pinataOptions": json.dumps({"cidVersion": 1}),
                },
                timeout=self.config.upload_timeout,
            )
            _report(on_progress, 90)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise StorageUploadFailed(f"Upload to storage provider failed: {exc}") from exc
        except ValueError as exc:
            raise StorageUploadFailed("Storage provider returned a malformed response") from exc
        content_id = str(body.get("IpfsHash") or "")
        if not content_id:
            raise StorageUploadFailed("Storage provider did not return a content id")
        _report(on_progress, 100)
        logger.info("Uploaded %d bytes as %s", len(ciphertext), content_id)
        return content_id

    def download(self, content_id: str) -> bytes:
        if not content_id:
            raise StorageDownloadFailed("Content id must not be empty")
        url = f"{self.config.gateway_url.rstrip('/')}/ipfs/{content_id}"
        try:
            response = self.http_client.get(url, timeout=self.config.upload_timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise StorageDownloadFailed(f"Content {content_id} is not retrievable: {exc}") from exc
        return response.content

    def pin(self, content_id: str, name_hint: str = "") -> bool:
        if not self.is_configured:
            logger.warning("Skipping re-pin of %s: storage credentials not configured", content_id)
            return False
        payload = {"hashToPin": content_id, "pinataMetadata": {"name": name_hint or content_id}}
        try:
            response = self.http_client.post(
                self._url("/pinning/pinByHash"),
                headers=self._headers(),
                json=payload,
                timeout=self.config.upload_timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Re-pin request for %s failed: %s", content_id, exc)
            return False
        return True

    def _url(self, suffix: str) -> str:
        return f"{self.config.api_url.rstrip('/')}{suffix}"

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.config.jwt}"}


def _report(callback: Optional[ProgressCallback], value: float) -> None:
    if callback is not None:
        callback(value)

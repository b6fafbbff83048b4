"""REST client for the encrypted-metadata mirror."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

import requests


@dataclass
class MetadataMirrorClient:
    base_url: str
    timeout: float = 5.0
    http_client: object = requests

    def _url(self, suffix: str) -> str:
        base = self.base_url.rstrip("/")
        return f"{base}/api/files{suffix}"

    @staticmethod
    def _headers(owner_id: str) -> Dict[str, str]:
        return {"X-Wallet-Address": owner_id}

    def list_files(self, owner_id: str) -> List[Dict[str, Any]]:
        response = self.http_client.get(self._url(""), headers=self._headers(owner_id), timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        return body.get("files", []) if isinstance(body, dict) else list(body)

    def create_file(self, owner_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.http_client.post(
            self._url(""),
            json=payload,
            headers=self._headers(owner_id),
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

from __future__ import annotations

import json

import pytest
import requests

from cipher_vault.clients.storage_client import PinningStorageClient
from cipher_vault.config import StorageProviderConfig
from cipher_vault.exceptions import StorageDownloadFailed, StorageUploadFailed


class _DummyResponse:
    def __init__(self, payload=None, status_code=200, content=b""):
        self._payload = payload
        self.status_code = status_code
        self.content = content

    def json(self):
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class _StubHTTP:
    def __init__(self, post_response=None, get_response=None):
        self.post_response = post_response or _DummyResponse({"IpfsHash": "bafyabc"})
        self.get_response = get_response or _DummyResponse(content=b"cipher")
        self.posts = []
        self.gets = []

    def post(self, url, headers, timeout, files=None, data=None, json=None):
        self.posts.append({"url": url, "headers": headers, "files": files, "data": data, "json": json})
        if isinstance(self.post_response, Exception):
            raise self.post_response
        return self.post_response

    def get(self, url, timeout):
        self.gets.append(url)
        if isinstance(self.get_response, Exception):
            raise self.get_response
        return self.get_response


def _client(http, **overrides):
    config = StorageProviderConfig(jwt="token-123", **overrides)
    return PinningStorageClient(config, http_client=http)


def test_upload_sends_encrypted_payload_and_returns_content_id():
    http = _StubHTTP()
    progress = []
    content_id = _client(http).upload(b"\x00\x01cipher", "report.pdf", on_progress=progress.append)

    assert content_id == "bafyabc"
    [call] = http.posts
    assert call["url"] == "https://api.pinata.cloud/pinning/pinFileToIPFS"
    assert call["headers"]["Authorization"] == "Bearer token-123"
    name, body, mime = call["files"]["file"]
    assert name == "report.pdf.encrypted"
    assert body == b"\x00\x01cipher"
    assert mime == "application/octet-stream"
    assert json.loads(call["data"]["pinataOptions"]) == {"cidVersion": 1}
    assert progress == [10, 90, 100]


def test_upload_requires_credentials():
    client = PinningStorageClient(StorageProviderConfig(), http_client=_StubHTTP())
    with pytest.raises(StorageUploadFailed):
        client.upload(b"x", "a")


def test_upload_rejects_oversized_payloads():
    http = _StubHTTP()
    with pytest.raises(StorageUploadFailed, match="exceeds"):
        _client(http, max_file_bytes=4).upload(b"12345", "a")
    assert http.posts == []


def test_upload_translates_transport_errors():
    http = _StubHTTP(post_response=requests.ConnectionError("offline"))
    with pytest.raises(StorageUploadFailed):
        _client(http).upload(b"x", "a")


def test_upload_translates_http_errors_and_missing_hash():
    with pytest.raises(StorageUploadFailed):
        _client(_StubHTTP(post_response=_DummyResponse({"error": "denied"}, status_code=401))).upload(b"x", "a")
    with pytest.raises(StorageUploadFailed, match="content id"):
        _client(_StubHTTP(post_response=_DummyResponse({}))).upload(b"x", "a")


def test_download_reads_from_gateway():
    http = _StubHTTP()
    assert _client(http).download("bafyabc") == b"cipher"
    assert http.gets == ["https://gateway.pinata.cloud/ipfs/bafyabc"]


def test_download_failures_are_translated():
    http = _StubHTTP(get_response=_DummyResponse(status_code=404))
    with pytest.raises(StorageDownloadFailed):
        _client(http).download("bafyabc")
    with pytest.raises(StorageDownloadFailed):
        _client(_StubHTTP()).download("")


def test_pin_by_hash_reports_outcome():
    http = _StubHTTP()
    assert _client(http).pin("bafyabc", "report.pdf") is True
    assert http.posts[0]["url"].endswith("/pinning/pinByHash")
    assert http.posts[0]["json"]["hashToPin"] == "bafyabc"

    failing = _StubHTTP(post_response=requests.Timeout("slow"))
    assert _client(failing).pin("bafyabc") is False

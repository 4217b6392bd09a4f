from __future__ import annotations

import gzip
import json

import httpx
import pytest

from backfill.common.settings import ProxySettings


PRIMARY_URL = "https://primary.test/file/media-bucket"
BACKUP_URL = "https://backup.test/assets"
AUTHORIZE_URL = "https://api.b2.test/b2api/v1/b2_authorize_account"
API_URL = "https://api001.b2.test"
UPLOAD_URL = "https://pod-000.b2.test/b2api/v2/b2_upload_file/media-bucket/c001"
CACHE_POLICY = "public, max-age=3600, stale-while-revalidate=3600, stale-if-error=86400"


class FakeUpstreams:
    """In-process stand-in for the primary store, its auth API and the backup origin."""

    def __init__(self) -> None:
        self.primary: dict[str, tuple[bytes, dict[str, str]]] = {}
        self.backup: dict[str, tuple[bytes, dict[str, str]]] = {}
        self.requests: list[httpx.Request] = []
        self.authorize_status = 200
        self.upload_url_status = 200
        self.upload_status = 200
        self.upload_url = UPLOAD_URL
        self.fail_hosts: set[str] = set()
        # Backup origin compresses whenever the request accepts gzip.
        self.backup_negotiates_gzip = False

    def calls(self, host: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.host == host]

    @property
    def uploads(self) -> list[httpx.Request]:
        return self.calls("pod-000.b2.test")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host in self.fail_hosts:
            raise httpx.ConnectError("connection refused", request=request)
        if host == "primary.test":
            return self._serve(self.primary, request.url.path.removeprefix("/file/media-bucket/"))
        if host == "backup.test":
            response = self._serve(self.backup, request.url.path.removeprefix("/assets/"))
            if self.backup_negotiates_gzip and "gzip" in request.headers.get("accept-encoding", ""):
                return self._gzipped(response)
            return response
        if host == "api.b2.test":
            if self.authorize_status != 200:
                return httpx.Response(self.authorize_status, json={"code": "unauthorized"})
            return httpx.Response(200, json={"authorizationToken": "account-token", "apiUrl": API_URL})
        if host == "api001.b2.test":
            if self.upload_url_status != 200:
                return httpx.Response(self.upload_url_status, json={"code": "bad_request"})
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={"bucketId": body["bucketId"], "authorizationToken": "upload-token", "uploadUrl": self.upload_url},
            )
        if host == "pod-000.b2.test":
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, text="checksum did not match data received")
            return httpx.Response(200, json={"fileId": "4_z27c88f1d", "fileName": request.headers["X-Bz-File-Name"]})
        return httpx.Response(599, text=f"unexpected host {host}")

    @staticmethod
    def _serve(objects: dict[str, tuple[bytes, dict[str, str]]], path: str) -> httpx.Response:
        if path not in objects:
            return httpx.Response(404, headers={"Content-Type": "text/plain"}, stream=httpx.ByteStream(b"Not Found"))
        body, headers = objects[path]
        # Origins stream their bodies; a pre-read body cannot be iterated raw.
        return httpx.Response(200, headers=headers, stream=httpx.ByteStream(body))

    @staticmethod
    def _gzipped(response: httpx.Response) -> httpx.Response:
        body = gzip.compress(b"".join(response.stream))
        headers = {key: value for key, value in response.headers.items() if key.lower() != "content-length"}
        headers["Content-Encoding"] = "gzip"
        return httpx.Response(response.status_code, headers=headers, stream=httpx.ByteStream(body))


@pytest.fixture
def upstreams() -> FakeUpstreams:
    return FakeUpstreams()


@pytest.fixture
def settings() -> ProxySettings:
    return ProxySettings(
        bucket_id="bucket-123",
        key_id="key-id",
        application_key="app-key",
        primary_base_url=PRIMARY_URL,
        secondary_base_url=BACKUP_URL,
        authorize_url=AUTHORIZE_URL,
        redis_url=None,
        metrics_token=None,
    )

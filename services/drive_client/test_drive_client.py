"""Unit tests for the Google Drive client.

The Drive REST API is replaced by an in-memory fake served through
``httpx.MockTransport``.
"""

import base64
import json
import re
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from shared.encryption import TokenCipher
from shared.local_store import LocalStore
from services.drive_client.auth import DriveAuthenticator
from services.drive_client.drive_client import (
    DriveClient,
    FOLDER_MIME_TYPE,
    MULTIPART_BOUNDARY,
)
from services.drive_client.errors import AuthRequiredError, TransientStorageError


def _unquote(value: str) -> str:
    return value.replace("\\'", "'").replace("\\\\", "\\")


class FakeDrive:
    """Minimal stand-in for the Drive v3 files API."""

    def __init__(self):
        self.files = {}
        self.requests = []
        self.fail_with = None
        self._next_id = 1

    def add(self, name, mime_type, parents=None, trashed=False, content=b""):
        file_id = f"file-{self._next_id}"
        self._next_id += 1
        self.files[file_id] = {
            "id": file_id,
            "name": name,
            "mimeType": mime_type,
            "parents": parents or [],
            "trashed": trashed,
            "content": content,
            "metadata": {},
        }
        return file_id

    def named(self, name):
        return [f for f in self.files.values() if f["name"] == name and not f["trashed"]]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return self.fail_with

        path = request.url.path
        if request.method == "GET" and path == "/drive/v3/files":
            return self._search(request.url.params["q"])
        if request.method == "POST" and path == "/drive/v3/files":
            body = json.loads(request.content)
            file_id = self.add(body["name"], body["mimeType"])
            return httpx.Response(200, json={"id": file_id})
        if request.method == "POST" and path == "/upload/drive/v3/files":
            metadata, content = self._parse_multipart(request)
            file_id = self.add(
                metadata["name"], metadata["mimeType"], metadata.get("parents"), content=content
            )
            self.files[file_id]["metadata"] = metadata
            return httpx.Response(200, json={"id": file_id})
        if request.method == "PATCH" and path.startswith("/upload/drive/v3/files/"):
            file_id = path.rsplit("/", 1)[-1]
            metadata, content = self._parse_multipart(request)
            self.files[file_id]["content"] = content
            self.files[file_id]["metadata"].update(metadata)
            return httpx.Response(200, json={"id": file_id})
        return httpx.Response(404, json={"error": "not found"})

    def _search(self, query):
        assert "trashed = false" in query
        name = _unquote(re.search(r"name = '((?:[^'\\]|\\.)*)'", query).group(1))
        parent = re.search(r"'([^']+)' in parents", query)
        folder_only = FOLDER_MIME_TYPE in query

        matches = []
        for f in self.files.values():
            if f["trashed"] or f["name"] != name:
                continue
            if parent and parent.group(1) not in f["parents"]:
                continue
            if folder_only and f["mimeType"] != FOLDER_MIME_TYPE:
                continue
            matches.append({"id": f["id"], "name": f["name"]})
        return httpx.Response(200, json={"files": matches})

    @staticmethod
    def _parse_multipart(request):
        parts = request.content.split(f"--{MULTIPART_BOUNDARY}".encode())
        meta_headers, _, meta_body = parts[1].partition(b"\r\n\r\n")
        content_headers, _, content_body = parts[2].partition(b"\r\n\r\n")
        metadata = json.loads(meta_body.strip())
        content = content_body[:-2]
        if b"Content-Transfer-Encoding: base64" in content_headers:
            content = base64.b64decode(content)
        return metadata, content


@pytest.fixture
def store():
    db = LocalStore(database_url="sqlite:///:memory:", namespace="test-app")
    db.create_tables()
    return db


@pytest.fixture
def authenticator(store):
    cipher = TokenCipher([TokenCipher.generate_key()])
    auth = DriveAuthenticator(store, cipher, revoke_url="https://oauth2.example/revoke")
    auth.sign_in("test-token")
    return auth


@pytest.fixture
def fake_drive():
    return FakeDrive()


@pytest.fixture
def drive_client(authenticator, fake_drive):
    http_client = httpx.AsyncClient(
        base_url="https://www.googleapis.com",
        transport=httpx.MockTransport(fake_drive.handler)
    )
    return DriveClient(authenticator, http_client=http_client, folder_name="EMR Data", file_prefix="")


@pytest.fixture
def no_backoff():
    """Skip the backoff sleeps of retried searches."""
    with patch("services.drive_client.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestResolveFolder:
    """Tests for folder resolution."""

    @pytest.mark.asyncio
    async def test_creates_folder_when_absent(self, drive_client, fake_drive):
        folder_id = await drive_client.resolve_folder()

        assert fake_drive.files[folder_id]["name"] == "EMR Data"
        assert fake_drive.files[folder_id]["mimeType"] == FOLDER_MIME_TYPE

    @pytest.mark.asyncio
    async def test_reuses_existing_folder(self, drive_client, fake_drive):
        existing = fake_drive.add("EMR Data", FOLDER_MIME_TYPE)

        assert await drive_client.resolve_folder() == existing
        assert await drive_client.resolve_folder() == existing
        assert len(fake_drive.named("EMR Data")) == 1

    @pytest.mark.asyncio
    async def test_ignores_trashed_folder(self, drive_client, fake_drive):
        trashed = fake_drive.add("EMR Data", FOLDER_MIME_TYPE, trashed=True)

        folder_id = await drive_client.resolve_folder()

        assert folder_id != trashed

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, drive_client, fake_drive):
        await drive_client.resolve_folder()

        assert fake_drive.requests[0].headers["Authorization"] == "Bearer test-token"


class TestFindFile:
    """Tests for file lookup."""

    @pytest.mark.asyncio
    async def test_returns_none_when_missing(self, drive_client, fake_drive):
        folder = fake_drive.add("EMR Data", FOLDER_MIME_TYPE)

        assert await drive_client.find_file("P1.json", folder) is None

    @pytest.mark.asyncio
    async def test_scoped_to_folder(self, drive_client, fake_drive):
        folder = fake_drive.add("EMR Data", FOLDER_MIME_TYPE)
        other = fake_drive.add("Other", FOLDER_MIME_TYPE)
        fake_drive.add("P1.json", "application/json", parents=[other])
        wanted = fake_drive.add("P1.json", "application/json", parents=[folder])

        assert await drive_client.find_file("P1.json", folder) == wanted

    @pytest.mark.asyncio
    async def test_escapes_quotes_in_names(self, drive_client, fake_drive):
        folder = fake_drive.add("EMR Data", FOLDER_MIME_TYPE)
        wanted = fake_drive.add("O'Brien.json", "application/json", parents=[folder])

        assert await drive_client.find_file("O'Brien.json", folder) == wanted


class TestUploads:
    """Tests for text and binary uploads."""

    @pytest.mark.asyncio
    async def test_upload_text_sends_metadata_and_content(self, drive_client, fake_drive):
        folder = fake_drive.add("EMR Data", FOLDER_MIME_TYPE)
        created = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

        file_id = await drive_client.upload_text(
            "P1.json", '{"a": 1}', folder, created_at=created, updated_at=created
        )

        stored = fake_drive.files[file_id]
        assert stored["content"] == b'{"a": 1}'
        assert stored["parents"] == [folder]
        assert stored["metadata"]["createdTime"] == "2024-01-01T10:00:00.000Z"
        assert stored["metadata"]["modifiedTime"] == "2024-01-01T10:00:00.000Z"

        request = fake_drive.requests[-1]
        assert request.url.params["uploadType"] == "multipart"
        assert request.headers["Content-Type"].startswith("multipart/related")

    @pytest.mark.asyncio
    async def test_update_text_overwrites_content(self, drive_client, fake_drive):
        file_id = fake_drive.add("P1.json", "application/json", content=b"old")
        updated = datetime(2024, 2, 1, 12, 30, tzinfo=timezone.utc)

        await drive_client.update_text(file_id, "new", updated_at=updated)

        assert fake_drive.files[file_id]["content"] == b"new"
        assert fake_drive.files[file_id]["metadata"]["modifiedTime"] == "2024-02-01T12:30:00.000Z"
        assert fake_drive.requests[-1].method == "PATCH"

    @pytest.mark.asyncio
    async def test_upload_binary_is_base64_encoded(self, drive_client, fake_drive):
        folder = fake_drive.add("EMR Data", FOLDER_MIME_TYPE)
        pdf = b"%PDF-1.4\x00\xff\xfe binary"

        file_id = await drive_client.upload_binary("P1_Chart.pdf", pdf, folder)

        assert b"Content-Transfer-Encoding: base64" in fake_drive.requests[-1].content
        assert fake_drive.files[file_id]["content"] == pdf
        assert fake_drive.files[file_id]["mimeType"] == "application/pdf"

    @pytest.mark.asyncio
    async def test_update_binary_overwrites_content(self, drive_client, fake_drive):
        file_id = fake_drive.add("P1_Chart.pdf", "application/pdf", content=b"old")

        await drive_client.update_binary(file_id, b"\x00new")

        assert fake_drive.files[file_id]["content"] == b"\x00new"


class TestUpsertRecordFiles:
    """Tests for the composite record upload."""

    @pytest.mark.asyncio
    async def test_first_upload_creates_both_files(self, drive_client, fake_drive):
        result = await drive_client.upsert_record_files("P1", '{"v": 1}', b"chart-1")

        assert fake_drive.files[result.json_file_id]["name"] == "P1.json"
        assert fake_drive.files[result.binary_file_id]["name"] == "P1_Chart.pdf"

    @pytest.mark.asyncio
    async def test_second_upload_updates_instead_of_duplicating(self, drive_client, fake_drive):
        first = await drive_client.upsert_record_files("P1", '{"v": 1}', b"chart-1")
        second = await drive_client.upsert_record_files("P1", '{"v": 2}', b"chart-2")

        assert second == first
        assert len(fake_drive.named("EMR Data")) == 1
        assert len(fake_drive.named("P1.json")) == 1
        assert len(fake_drive.named("P1_Chart.pdf")) == 1
        assert fake_drive.files[first.json_file_id]["content"] == b'{"v": 2}'
        assert fake_drive.files[first.binary_file_id]["content"] == b"chart-2"

    @pytest.mark.asyncio
    async def test_without_binary_only_json_is_written(self, drive_client, fake_drive):
        result = await drive_client.upsert_record_files("P2", "{}")

        assert result.binary_file_id is None
        assert fake_drive.named("P2_Chart.pdf") == []

    @pytest.mark.asyncio
    async def test_file_prefix_applied(self, authenticator, fake_drive):
        http_client = httpx.AsyncClient(
            base_url="https://www.googleapis.com",
            transport=httpx.MockTransport(fake_drive.handler)
        )
        client = DriveClient(authenticator, http_client=http_client, folder_name="EMR", file_prefix="GH26")

        await client.upsert_record_files("P1", "{}", b"pdf")

        assert len(fake_drive.named("GH26P1.json")) == 1
        assert len(fake_drive.named("GH26P1_Chart.pdf")) == 1


class TestErrors:
    """Tests for error classification."""

    @pytest.mark.asyncio
    async def test_signed_out_fails_fast_without_requests(self, drive_client, fake_drive, authenticator):
        authenticator.invalidate()

        with pytest.raises(AuthRequiredError):
            await drive_client.upsert_record_files("P1", "{}")

        assert fake_drive.requests == []

    @pytest.mark.asyncio
    async def test_401_is_auth_error_and_invalidates_token(self, drive_client, fake_drive, authenticator):
        fake_drive.fail_with = httpx.Response(401, json={"error": "invalid_token"})

        with pytest.raises(AuthRequiredError):
            await drive_client.upsert_record_files("P1", "{}")

        assert authenticator.is_authenticated() is False
        assert len(fake_drive.requests) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, drive_client, fake_drive, no_backoff):
        fake_drive.fail_with = httpx.Response(503, text="backend error")

        with pytest.raises(TransientStorageError) as exc_info:
            await drive_client.upsert_record_files("P1", "{}")

        assert exc_info.value.status_code == 503
        # Searches are retried twice before giving up
        assert len(fake_drive.requests) == 3

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, authenticator, no_backoff):
        def unreachable(request):
            raise httpx.ConnectError("network unreachable", request=request)

        http_client = httpx.AsyncClient(
            base_url="https://www.googleapis.com",
            transport=httpx.MockTransport(unreachable)
        )
        client = DriveClient(authenticator, http_client=http_client, folder_name="EMR Data")

        with pytest.raises(TransientStorageError):
            await client.resolve_folder()

    @pytest.mark.asyncio
    async def test_failed_write_is_not_retried_in_call(self, drive_client, fake_drive):
        folder = fake_drive.add("EMR Data", FOLDER_MIME_TYPE)
        fake_drive.fail_with = httpx.Response(500, text="oops")

        with pytest.raises(TransientStorageError):
            await drive_client.upload_text("P1.json", "{}", folder)

        assert len(fake_drive.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self, drive_client, fake_drive, no_backoff):
        fake_drive.fail_with = httpx.Response(429, headers={"Retry-After": "7"}, text="slow down")

        with pytest.raises(TransientStorageError) as exc_info:
            await drive_client.resolve_folder()

        assert exc_info.value.retry_after == 7.0
        assert no_backoff.await_args_list[0].args[0] == 7.0

    @pytest.mark.asyncio
    async def test_html_page_on_search_is_transient(self, drive_client, fake_drive, no_backoff):
        fake_drive.fail_with = httpx.Response(
            200, text="<html>Sign in to hotel wifi</html>", headers={"Content-Type": "text/html"}
        )

        with pytest.raises(TransientStorageError) as exc_info:
            await drive_client.resolve_folder()

        assert exc_info.value.status_code == 200
        assert "non-JSON" in str(exc_info.value)
        assert len(fake_drive.requests) == 3

    @pytest.mark.asyncio
    async def test_html_page_during_upsert_is_transient(self, drive_client, fake_drive, no_backoff):
        fake_drive.fail_with = httpx.Response(200, text="<html>Sign in to hotel wifi</html>")

        with pytest.raises(TransientStorageError):
            await drive_client.upsert_record_files("P1", "{}", b"%PDF")

        assert fake_drive.files == {}

    @pytest.mark.asyncio
    async def test_search_with_malformed_files_list_is_transient(self, drive_client, fake_drive, no_backoff):
        fake_drive.fail_with = httpx.Response(200, json={"files": "none"})

        with pytest.raises(TransientStorageError):
            await drive_client.resolve_folder()

    @pytest.mark.asyncio
    async def test_upload_without_file_id_is_transient(self, drive_client, fake_drive):
        folder = fake_drive.add("EMR Data", FOLDER_MIME_TYPE)
        fake_drive.fail_with = httpx.Response(200, json={"kind": "drive#file"})

        with pytest.raises(TransientStorageError):
            await drive_client.upload_text("P1.json", "{}", folder)

        assert len(fake_drive.requests) == 1

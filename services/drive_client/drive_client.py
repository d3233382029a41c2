"""Google Drive client - uploads patient record files."""

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from shared.config import get_drive_config
from shared.models import UpsertResult
from services.drive_client.auth import DriveAuthenticator
from services.drive_client.errors import AuthRequiredError, TransientStorageError
from services.drive_client.retry import retry_with_exponential_backoff

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
JSON_MIME_TYPE = "application/json"
PDF_MIME_TYPE = "application/pdf"
MULTIPART_BOUNDARY = "-------314159265358979323846"


def _rfc3339(value: Optional[datetime]) -> Optional[str]:
    """Format a timestamp the way the Drive API expects it."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _quote(value: str) -> str:
    """Quote a string literal for a Drive search query."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _retry_after(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return float(header)
    except ValueError:
        return None


class DriveClient:
    """Find-or-create uploads of record files into one Drive folder."""

    def __init__(
        self,
        authenticator: DriveAuthenticator,
        http_client: Optional[httpx.AsyncClient] = None,
        folder_name: Optional[str] = None,
        file_prefix: Optional[str] = None
    ):
        """
        Initialize Drive client.

        Args:
            authenticator: Source of the bearer token
            http_client: HTTP client rooted at the Google API host (created from config if omitted)
            folder_name: Name of the Drive folder holding record files
            file_prefix: Prefix prepended to every record file name
        """
        drive_config = get_drive_config()
        self.authenticator = authenticator
        self.http_client = http_client or httpx.AsyncClient(
            base_url=drive_config["api_base_url"],
            timeout=drive_config["timeout"]
        )
        self.folder_name = folder_name or drive_config["folder_name"]
        self.file_prefix = drive_config["file_prefix"] if file_prefix is None else file_prefix

    async def aclose(self) -> None:
        await self.http_client.aclose()

    def json_file_name(self, record_id: str) -> str:
        return f"{self.file_prefix}{record_id}.json"

    def binary_file_name(self, record_id: str) -> str:
        return f"{self.file_prefix}{record_id}_Chart.pdf"

    async def resolve_folder(self, name: Optional[str] = None) -> str:
        """
        Get or create the records folder.

        Search and create are not atomic: two devices creating the folder at
        the same moment can both succeed, leaving two folders with the same
        name. Later searches pick whichever the API lists first.

        Args:
            name: Folder name (defaults to the configured folder)

        Returns:
            Drive folder ID
        """
        name = name or self.folder_name
        files = await self._search(
            f"name = {_quote(name)} and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false"
        )
        if files:
            return files[0]["id"]

        response = await self._request(
            "POST",
            "/drive/v3/files",
            json={"name": name, "mimeType": FOLDER_MIME_TYPE}
        )
        folder_id = self._file_id(response)
        logger.info(f"Created Drive folder {name!r}: {folder_id}")
        return folder_id

    async def find_file(self, name: str, folder_id: str) -> Optional[str]:
        """
        Search for a file by exact name in a folder, ignoring trashed files.

        Returns:
            File ID, or None if no such file exists
        """
        files = await self._search(
            f"name = {_quote(name)} and {_quote(folder_id)} in parents and trashed = false"
        )
        if files:
            return files[0]["id"]
        return None

    async def upload_text(
        self,
        name: str,
        content: str,
        folder_id: str,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        mime_type: str = JSON_MIME_TYPE
    ) -> str:
        """Create a new text file and return its ID."""
        metadata = self._create_metadata(name, mime_type, folder_id, created_at, updated_at)
        response = await self._request(
            "POST",
            "/upload/drive/v3/files",
            params={"uploadType": "multipart"},
            **self._multipart(metadata, content.encode("utf-8"), mime_type)
        )
        file_id = self._file_id(response)
        logger.info(f"File uploaded to Drive: {name} ({file_id})")
        return file_id

    async def update_text(
        self,
        file_id: str,
        content: str,
        updated_at: Optional[datetime] = None,
        mime_type: str = JSON_MIME_TYPE
    ) -> None:
        """Overwrite the content and modification time of an existing text file."""
        await self._request(
            "PATCH",
            f"/upload/drive/v3/files/{file_id}",
            params={"uploadType": "multipart"},
            **self._multipart(self._update_metadata(updated_at), content.encode("utf-8"), mime_type)
        )
        logger.info(f"File updated in Drive: {file_id}")

    async def upload_binary(
        self,
        name: str,
        content: bytes,
        folder_id: str,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        mime_type: str = PDF_MIME_TYPE
    ) -> str:
        """Create a new binary file, sent base64-encoded, and return its ID."""
        metadata = self._create_metadata(name, mime_type, folder_id, created_at, updated_at)
        response = await self._request(
            "POST",
            "/upload/drive/v3/files",
            params={"uploadType": "multipart"},
            **self._multipart(metadata, base64.b64encode(content), mime_type, base64_encoded=True)
        )
        file_id = self._file_id(response)
        logger.info(f"Binary file uploaded to Drive: {name} ({file_id})")
        return file_id

    async def update_binary(
        self,
        file_id: str,
        content: bytes,
        updated_at: Optional[datetime] = None,
        mime_type: str = PDF_MIME_TYPE
    ) -> None:
        """Overwrite the content and modification time of an existing binary file."""
        await self._request(
            "PATCH",
            f"/upload/drive/v3/files/{file_id}",
            params={"uploadType": "multipart"},
            **self._multipart(
                self._update_metadata(updated_at),
                base64.b64encode(content),
                mime_type,
                base64_encoded=True
            )
        )
        logger.info(f"Binary file updated in Drive: {file_id}")

    async def upsert_record_files(
        self,
        record_id: str,
        json_content: str,
        binary_content: Optional[bytes] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None
    ) -> UpsertResult:
        """
        Upload or update the JSON document and chart for one record.

        The folder is resolved once; each file is looked up by its
        deterministic name and updated in place when it already exists, so
        repeated uploads of the same record never create duplicates.

        Args:
            record_id: Stable patient record identifier
            json_content: Serialized record
            binary_content: Rendered chart, if any
            created_at: First-save time, used only when creating files
            updated_at: Modification time written to Drive

        Returns:
            UpsertResult with the Drive file IDs

        Raises:
            AuthRequiredError: If not signed in or the token was rejected
            TransientStorageError: On any other transport failure
        """
        # Fail before any network traffic when signed out
        self.authenticator.get_access_token()

        folder_id = await self.resolve_folder()

        json_name = self.json_file_name(record_id)
        existing_json_id = await self.find_file(json_name, folder_id)
        if existing_json_id:
            await self.update_text(existing_json_id, json_content, updated_at)
            json_file_id = existing_json_id
        else:
            json_file_id = await self.upload_text(
                json_name, json_content, folder_id, created_at, updated_at
            )

        binary_file_id = None
        if binary_content is not None:
            binary_name = self.binary_file_name(record_id)
            existing_binary_id = await self.find_file(binary_name, folder_id)
            if existing_binary_id:
                await self.update_binary(existing_binary_id, binary_content, updated_at)
                binary_file_id = existing_binary_id
            else:
                binary_file_id = await self.upload_binary(
                    binary_name, binary_content, folder_id, created_at, updated_at
                )

        logger.info(f"Record {record_id} synced to Drive folder {folder_id}")
        return UpsertResult(json_file_id=json_file_id, binary_file_id=binary_file_id)

    @retry_with_exponential_backoff(max_retries=2, initial_delay=0.5)
    async def _search(self, query: str) -> List[Dict[str, Any]]:
        response = await self._request(
            "GET",
            "/drive/v3/files",
            params={"q": query, "fields": "files(id,name)", "spaces": "drive"}
        )
        files = self._json_body(response).get("files", [])
        if not isinstance(files, list):
            raise TransientStorageError(
                f"Drive search returned malformed files list: {response.text[:200]}",
                status_code=response.status_code
            )
        return files

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.authenticator.get_access_token()}"}
        headers.update(kwargs.pop("headers", {}))

        try:
            response = await self.http_client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise TransientStorageError(f"Drive request {method} {url} failed: {e}") from e

        if response.status_code == 401:
            self.authenticator.invalidate()
            raise AuthRequiredError("Drive rejected the access token", status_code=401)

        if response.status_code >= 400:
            raise TransientStorageError(
                f"Drive request {method} {url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                retry_after=_retry_after(response)
            )

        return response

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        """
        Decode a successful Drive response.

        A 2xx answer that is not a JSON object (a captive portal or proxy
        page) means the request never reached Drive.

        Raises:
            TransientStorageError: If the body is not a JSON object
        """
        try:
            body = response.json()
        except ValueError as e:
            raise TransientStorageError(
                f"Drive returned a non-JSON response "
                f"({response.headers.get('Content-Type', 'unknown type')}): {response.text[:200]}",
                status_code=response.status_code
            ) from e

        if not isinstance(body, dict):
            raise TransientStorageError(
                f"Drive returned an unexpected response: {response.text[:200]}",
                status_code=response.status_code
            )
        return body

    @classmethod
    def _file_id(cls, response: httpx.Response) -> str:
        file_id = cls._json_body(response).get("id")
        if not file_id or not isinstance(file_id, str):
            raise TransientStorageError(
                f"Drive response has no file id: {response.text[:200]}",
                status_code=response.status_code
            )
        return file_id

    @staticmethod
    def _create_metadata(
        name: str,
        mime_type: str,
        folder_id: Optional[str],
        created_at: Optional[datetime],
        updated_at: Optional[datetime]
    ) -> Dict[str, Any]:
        metadata = {
            "name": name,
            "mimeType": mime_type,
            "parents": [folder_id] if folder_id else None,
            "createdTime": _rfc3339(created_at),
            "modifiedTime": _rfc3339(updated_at),
        }
        return {k: v for k, v in metadata.items() if v is not None}

    @staticmethod
    def _update_metadata(updated_at: Optional[datetime]) -> Dict[str, Any]:
        if updated_at is None:
            return {}
        return {"modifiedTime": _rfc3339(updated_at)}

    @staticmethod
    def _multipart(
        metadata: Dict[str, Any],
        payload: bytes,
        mime_type: str,
        base64_encoded: bool = False
    ) -> Dict[str, Any]:
        """Build a multipart/related body: JSON metadata part, then the content part."""
        delimiter = f"\r\n--{MULTIPART_BOUNDARY}\r\n".encode()
        close_delimiter = f"\r\n--{MULTIPART_BOUNDARY}--".encode()

        content_headers = f"Content-Type: {mime_type}\r\n"
        if base64_encoded:
            content_headers += "Content-Transfer-Encoding: base64\r\n"

        body = b"".join([
            delimiter,
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            json.dumps(metadata).encode("utf-8"),
            delimiter,
            content_headers.encode(),
            b"\r\n",
            payload,
            close_delimiter,
        ])
        return {
            "content": body,
            "headers": {"Content-Type": f'multipart/related; boundary="{MULTIPART_BOUNDARY}"'},
        }

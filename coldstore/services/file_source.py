"""Source document system adapter.

:class:`FileSource` is what the scan workflow and the pipelines need from the
system files are archived out of; :class:`GraphFileSource` implements it
against the Microsoft Graph drive endpoints with httpx.

Only three calls are used:

* ``GET  /sites/{site}/drives`` then ``GET /drives/{drive}/root/delta``
  (paged via ``@odata.nextLink``) to enumerate files,
* ``GET  /drives/{drive}/items/{item}/content`` to download,
* ``PUT  /drives/{drive}/items/{item}/content`` to restore a retrieved file.

Access tokens are obtained from a caller-owned ``token_provider`` coroutine
keyed by the tenant's external id; this module never handles credentials.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

import httpx

from coldstore.config import settings
from coldstore.core.errors import TransientIOError
from coldstore.core.timeutil import utcnow

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT = 60.0
_RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

TokenProvider = Callable[[str], Awaitable[str]]


@dataclass(frozen=True)
class FileRef:
    """Location of one file in the source system."""

    tenant_external_id: str
    site_id: str
    drive_id: str
    item_id: str
    file_path: str = ""


@dataclass
class SourceFile:
    """File metadata as enumerated from the source system."""

    site_id: str
    drive_id: str
    item_id: str
    file_name: str
    file_path: str
    size_bytes: int
    last_modified_at: datetime
    file_type: str = ""
    owner: str | None = None
    created_at: datetime | None = None
    last_accessed_at: datetime | None = None
    compliance_tags: list[str] = field(default_factory=list)


@runtime_checkable
class FileSource(Protocol):
    async def list_files(self, tenant_external_id: str, site_id: str) -> list[SourceFile]:
        ...

    async def download_file(self, ref: FileRef) -> bytes:
        ...

    async def upload_file(self, ref: FileRef, data: bytes) -> None:
        ...


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _relative_folder(parent: dict[str, Any]) -> str:
    # parentReference.path looks like "/drives/{id}/root:/Folder/Sub"
    path = parent.get("path") or ""
    _, _, relative = path.partition("root:")
    return relative.strip("/")


def item_to_source_file(site_id: str, drive: dict[str, Any], item: dict[str, Any]) -> SourceFile | None:
    """Map a drive item onto :class:`SourceFile`; ``None`` for folders and deletions."""
    if "file" not in item or "deleted" in item:
        return None
    name = item.get("name", "")
    folder = _relative_folder(item.get("parentReference") or {})
    library = drive.get("name") or drive.get("id", "")
    file_path = "/".join(part for part in (library, folder, name) if part)

    created_by = (item.get("createdBy") or {}).get("user") or {}
    file_system = item.get("fileSystemInfo") or {}
    created = _parse_timestamp(item.get("createdDateTime"))
    modified = _parse_timestamp(item.get("lastModifiedDateTime")) or created or utcnow()
    return SourceFile(
        site_id=site_id,
        drive_id=drive["id"],
        item_id=item["id"],
        file_name=name,
        file_path=file_path,
        file_type=name.rsplit(".", 1)[1].lower() if "." in name else "",
        size_bytes=int(item.get("size") or 0),
        owner=created_by.get("email"),
        created_at=created,
        last_modified_at=modified,
        last_accessed_at=_parse_timestamp(file_system.get("lastAccessedDateTime")),
        compliance_tags=[
            label for label in [(item.get("retentionLabel") or {}).get("name")] if label
        ],
    )


class GraphFileSource:
    """httpx client for the Graph drive API.

    Args:
        token_provider: ``async (tenant_external_id) -> bearer token``.
        base_url: Graph root.  Defaults to ``settings.GRAPH_BASE_URL``.
        http_client: Optional shared :class:`httpx.AsyncClient` (tests pass
            one built on :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._base_url = (base_url or settings.GRAPH_BASE_URL).rstrip("/")
        self._http_client = http_client

    async def list_files(self, tenant_external_id: str, site_id: str) -> list[SourceFile]:
        drives = await self._get_json(tenant_external_id, f"{self._base_url}/sites/{site_id}/drives")
        files: list[SourceFile] = []
        for drive in drives.get("value", []):
            url: str | None = f"{self._base_url}/drives/{drive['id']}/root/delta"
            while url:
                page = await self._get_json(tenant_external_id, url)
                for item in page.get("value", []):
                    source_file = item_to_source_file(site_id, drive, item)
                    if source_file is not None:
                        files.append(source_file)
                url = page.get("@odata.nextLink")
        logger.info(
            "Enumerated %d files in site %s for tenant %s", len(files), site_id, tenant_external_id
        )
        return files

    async def download_file(self, ref: FileRef) -> bytes:
        url = f"{self._base_url}/drives/{ref.drive_id}/items/{ref.item_id}/content"
        response = await self._request("GET", ref.tenant_external_id, url)
        return response.content

    async def upload_file(self, ref: FileRef, data: bytes) -> None:
        url = f"{self._base_url}/drives/{ref.drive_id}/items/{ref.item_id}/content"
        await self._request(
            "PUT",
            ref.tenant_external_id,
            url,
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )

    async def _get_json(self, tenant_external_id: str, url: str) -> dict[str, Any]:
        response = await self._request("GET", tenant_external_id, url)
        return response.json()

    async def _request(
        self,
        method: str,
        tenant_external_id: str,
        url: str,
        *,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Issue one request.

        Raises:
            TransientIOError: On network errors and retryable HTTP statuses.
            httpx.HTTPStatusError: On other HTTP errors.
        """
        token = await self._token_provider(tenant_external_id)
        request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}
        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    method, url, content=content, headers=request_headers,
                    timeout=_HTTP_TIMEOUT, follow_redirects=True,
                )
            else:
                async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT, follow_redirects=True) as client:
                    response = await client.request(
                        method, url, content=content, headers=request_headers
                    )
        except httpx.RequestError as exc:
            raise TransientIOError(f"Source request failed: {exc}") from exc

        if response.status_code in _RETRYABLE_HTTP_STATUSES:
            raise TransientIOError(f"Source system returned HTTP {response.status_code} for {url}")
        response.raise_for_status()
        return response

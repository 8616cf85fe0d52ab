"""Tiered object store: where archived files live.

:class:`TieredObjectStore` is the contract the pipelines depend on;
:class:`S3TieredStore` implements it on any S3-compatible service with boto3.
Tiers map onto storage classes:

=========  ================  ======================================
tier       storage class     readable without rehydration
=========  ================  ======================================
``Cool``   ``STANDARD_IA``   yes
``Cold``   ``GLACIER_IR``    yes
``Archive``  ``DEEP_ARCHIVE``  no: ``restore_object`` first (hours)
=========  ================  ======================================

Rehydration is asynchronous.  :meth:`S3TieredStore.set_tier` on an archived
object to a readable tier starts a restore and returns; callers poll
:meth:`S3TieredStore.is_readable` until it reports ``True``.

Blocking boto3 calls are delegated to the default thread-pool executor so
the event loop is never blocked.  Connection and throttling errors are raised
as :class:`~coldstore.core.errors.TransientIOError`; everything else as
:class:`StorageError`.
"""

from __future__ import annotations

import asyncio
import base64
import functools
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError

from coldstore.config import SUPPORTED_TIERS, settings
from coldstore.core.errors import ColdStoreError, FatalConfigError, TransientIOError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIER_STORAGE_CLASSES: dict[str, str] = {
    "Cool": "STANDARD_IA",
    "Cold": "GLACIER_IR",
    "Archive": "DEEP_ARCHIVE",
}
_STORAGE_CLASS_TIERS = {v: k for k, v in TIER_STORAGE_CLASSES.items()}

#: Tiers whose objects must be rehydrated before they can be read.
REHYDRATION_TIERS: frozenset[str] = frozenset({"Archive"})

_THROTTLING_CODES = frozenset(
    {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout", "ServiceUnavailable", "InternalError"}
)


class StorageError(ColdStoreError):
    """Raised when the object store rejects a request permanently."""


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size_bytes: int
    sha256: str | None
    tier: str | None


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def blob_key(tenant_id: Any, site_id: str, file_path: str) -> str:
    """Return the object key for an archived file: ``tenant-{id}/{site}/{path}``."""
    return f"tenant-{tenant_id}/{site_id}/{(file_path or '').lstrip('/')}"


@runtime_checkable
class TieredObjectStore(Protocol):
    async def put_object(
        self, key: str, data: bytes, tier: str, metadata: dict[str, str] | None = None
    ) -> ObjectInfo:
        ...

    async def get_object(self, key: str) -> bytes:
        ...

    async def stat_object(self, key: str) -> ObjectInfo | None:
        ...

    async def set_tier(self, key: str, tier: str) -> None:
        ...

    async def get_tier(self, key: str) -> str | None:
        ...

    async def is_readable(self, key: str) -> bool:
        ...

    async def delete_object(self, key: str) -> None:
        ...


class S3TieredStore:
    """boto3-backed :class:`TieredObjectStore`.

    Args:
        bucket: Target bucket.  Defaults to ``settings.S3_BUCKET``.
        region: AWS region.  Defaults to ``settings.S3_REGION``.
        endpoint_url: Optional S3-compatible endpoint.  Defaults to
            ``settings.S3_ENDPOINT_URL``.
        restore_days: How long a restored copy stays readable.
        client: Pre-built boto3 S3 client (tests inject a stub).
    """

    def __init__(
        self,
        bucket: str | None = None,
        region: str | None = None,
        endpoint_url: str | None = None,
        restore_days: int | None = None,
        client: Any = None,
    ) -> None:
        self._bucket = bucket or settings.S3_BUCKET
        self._restore_days = restore_days or settings.S3_RESTORE_DAYS
        self._client = client or boto3.client(
            "s3",
            region_name=region or settings.S3_REGION,
            endpoint_url=endpoint_url or settings.S3_ENDPOINT_URL,
            config=Config(retries={"max_attempts": 2, "mode": "standard"}),
        )

    # ------------------------------------------------------------------
    # Async API
    # ------------------------------------------------------------------

    async def put_object(
        self, key: str, data: bytes, tier: str, metadata: dict[str, str] | None = None
    ) -> ObjectInfo:
        storage_class = _storage_class(tier)
        digest = hashlib.sha256(data).digest()
        await self._run(
            self._client.put_object,
            Bucket=self._bucket,
            Key=key,
            Body=data,
            StorageClass=storage_class,
            ChecksumAlgorithm="SHA256",
            ChecksumSHA256=base64.b64encode(digest).decode("ascii"),
            Metadata={**(metadata or {}), "sha256": digest.hex()},
        )
        return ObjectInfo(key=key, size_bytes=len(data), sha256=digest.hex(), tier=tier)

    async def get_object(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read()

        return await self._run(_read)

    async def stat_object(self, key: str) -> ObjectInfo | None:
        head = await self._head(key)
        if head is None:
            return None
        checksum = head.get("ChecksumSHA256")
        sha256 = (
            base64.b64decode(checksum).hex() if checksum else head.get("Metadata", {}).get("sha256")
        )
        return ObjectInfo(
            key=key,
            size_bytes=int(head.get("ContentLength", 0)),
            sha256=sha256,
            tier=_STORAGE_CLASS_TIERS.get(head.get("StorageClass", "STANDARD")),
        )

    async def set_tier(self, key: str, tier: str) -> None:
        """Move *key* to *tier*.

        For an object in a rehydration tier this starts a restore and
        returns immediately; otherwise the object is copied onto itself with
        the new storage class.
        """
        current = await self.get_tier(key)
        if current in REHYDRATION_TIERS and tier not in REHYDRATION_TIERS:
            try:
                await self._run(
                    self._client.restore_object,
                    Bucket=self._bucket,
                    Key=key,
                    RestoreRequest={
                        "Days": self._restore_days,
                        "GlacierJobParameters": {"Tier": "Standard"},
                    },
                )
            except StorageError as exc:
                # A restore already in progress is not an error.
                if "RestoreAlreadyInProgress" not in str(exc):
                    raise
            logger.info("Rehydration requested: key=%s from=%s to=%s", key, current, tier)
            return

        await self._run(
            self._client.copy_object,
            Bucket=self._bucket,
            Key=key,
            CopySource={"Bucket": self._bucket, "Key": key},
            StorageClass=_storage_class(tier),
            MetadataDirective="COPY",
        )

    async def get_tier(self, key: str) -> str | None:
        info = await self.stat_object(key)
        return info.tier if info is not None else None

    async def is_readable(self, key: str) -> bool:
        head = await self._head(key)
        if head is None:
            return False
        tier = _STORAGE_CLASS_TIERS.get(head.get("StorageClass", "STANDARD"))
        if tier not in REHYDRATION_TIERS:
            return True
        # e.g. 'ongoing-request="false", expiry-date="..."'
        restore = head.get("Restore") or ""
        return 'ongoing-request="false"' in restore

    async def delete_object(self, key: str) -> None:
        await self._run(self._client.delete_object, Bucket=self._bucket, Key=key)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _head(self, key: str) -> dict[str, Any] | None:
        try:
            return await self._run(
                self._client.head_object, Bucket=self._bucket, Key=key, ChecksumMode="ENABLED"
            )
        except StorageError as exc:
            if getattr(exc, "status_code", None) == 404:
                return None
            raise

    async def _run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        except ClientError as exc:
            error = exc.response.get("Error", {})
            code = error.get("Code", "")
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code in _THROTTLING_CODES or (status is not None and status >= 500):
                raise TransientIOError(f"Object store unavailable ({code}): {exc}") from exc
            storage_error = StorageError(f"Object store request failed ({code}): {exc}")
            storage_error.status_code = 404 if code in ("404", "NoSuchKey", "NotFound") else status
            raise storage_error from exc
        except BotoConnectionError as exc:
            raise TransientIOError(f"Object store unreachable: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Object store client error: {exc}") from exc


def _storage_class(tier: str) -> str:
    if tier not in SUPPORTED_TIERS:
        raise FatalConfigError(f"Unsupported target tier '{tier}'")
    return TIER_STORAGE_CLASSES[tier]

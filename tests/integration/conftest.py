"""Shared fixtures for integration tests.

Every test gets a fresh **in-memory SQLite** database (``aiosqlite`` +
``StaticPool``) with the full schema created from the ORM metadata.  The
services under test commit their own checkpoints, so isolation comes from a
new engine per test rather than from rolling back a shared session.

SQLAlchemy maps the PostgreSQL-specific column types (``JSONB``, ``UUID``)
to SQLite-compatible storage and named ``Enum`` types to ``VARCHAR``;
``server_default`` timestamps compile to ``CURRENT_TIMESTAMP``.

The fakes below stand in for the source document system and the tiered
object store.  They implement the same protocols as
:class:`~coldstore.services.file_source.GraphFileSource` and
:class:`~coldstore.services.tiered_store.S3TieredStore` and record every call.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure all ORM models are registered with Base.metadata so create_all is complete
import coldstore.models  # noqa: F401
from coldstore.core import state_machine as sm
from coldstore.core.errors import TransientIOError
from coldstore.db.base import Base
from coldstore.models.archive_operation import ArchiveOperation
from coldstore.models.archive_rule import ArchiveRule
from coldstore.models.file_record import FileRecord
from coldstore.models.tenant import ClientTenant, MspOrganization, Site
from coldstore.services.file_source import FileRef, SourceFile
from coldstore.services.tiered_store import REHYDRATION_TIERS, ObjectInfo, sha256_hex

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as sess:
        yield sess


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def org(session: AsyncSession) -> MspOrganization:
    row = MspOrganization(id=uuid.uuid4(), name="Northwind MSP", created_at=NOW)
    session.add(row)
    await session.commit()
    return row


@pytest_asyncio.fixture
async def tenant(session: AsyncSession, org: MspOrganization) -> ClientTenant:
    row = ClientTenant(
        id=uuid.uuid4(),
        msp_org_id=org.id,
        external_tenant_id="contoso-ext",
        display_name="Contoso",
        status="Connected",
        auto_approval_days=7,
        review_flagged=False,
        created_at=NOW - timedelta(days=365),
    )
    session.add(row)
    await session.commit()
    return row


@pytest_asyncio.fixture
async def site(session: AsyncSession, tenant: ClientTenant) -> Site:
    row = Site(
        id=uuid.uuid4(),
        tenant_id=tenant.id,
        site_id="site-finance",
        url="https://contoso.example/sites/finance",
        display_name="Finance",
        storage_used_bytes=10 * 1024**3,
        is_selected=True,
        owner_email="owner@contoso.com",
    )
    session.add(row)
    await session.commit()
    return row


@pytest.fixture
def make_file(session: AsyncSession, tenant: ClientTenant, site: Site):
    """Factory inserting a FileRecord in the seeded tenant and site."""

    async def _make(**overrides) -> FileRecord:
        item_id = overrides.pop("item_id", uuid.uuid4().hex)
        name = overrides.pop("file_name", f"{item_id[:8]}.pdf")
        defaults = dict(
            id=uuid.uuid4(),
            msp_org_id=tenant.msp_org_id,
            tenant_id=tenant.id,
            site_id=site.site_id,
            drive_id="drive-1",
            item_id=item_id,
            file_name=name,
            file_path=f"Shared Documents/Reports/{name}",
            file_type=name.rsplit(".", 1)[-1],
            size_bytes=1024 * 1024,
            owner="alice@contoso.com",
            compliance_tags=[],
            created_at=NOW - timedelta(days=800),
            last_modified_at=NOW - timedelta(days=400),
            last_accessed_at=None,
            archive_status=sm.FILE_ACTIVE,
            blob_tier=None,
            scanned_at=NOW,
        )
        defaults.update(overrides)
        row = FileRecord(**defaults)
        session.add(row)
        await session.commit()
        return row

    return _make


@pytest.fixture
def make_rule(session: AsyncSession, tenant: ClientTenant):
    """Factory inserting an ArchiveRule for the seeded tenant."""

    async def _make(rule_type: str = "age", criteria: dict | None = None, **overrides) -> ArchiveRule:
        defaults = dict(
            id=uuid.uuid4(),
            msp_org_id=tenant.msp_org_id,
            tenant_id=tenant.id,
            name=f"{rule_type} rule",
            rule_type=rule_type,
            criteria=criteria if criteria is not None else {"inactiveDays": 180},
            target_tier="Cool",
            is_active=True,
            created_by="admin@northwind.com",
            created_at=NOW - timedelta(days=30),
        )
        defaults.update(overrides)
        row = ArchiveRule(**defaults)
        session.add(row)
        await session.commit()
        return row

    return _make


@pytest.fixture
def make_operation(session: AsyncSession, tenant: ClientTenant):
    """Factory inserting an ArchiveOperation for *file* in a given status."""

    async def _make(file: FileRecord, status: str = sm.PENDING, cycle: int = 1, **overrides) -> ArchiveOperation:
        defaults = dict(
            id=uuid.uuid4(),
            operation_id=sm.make_operation_id(
                tenant.id, file.site_id, file.drive_id, file.item_id, sm.ACTION_ARCHIVE, cycle
            ),
            msp_org_id=tenant.msp_org_id,
            tenant_id=tenant.id,
            file_id=file.id,
            site_id=file.site_id,
            action=sm.ACTION_ARCHIVE,
            cycle=cycle,
            source_path=file.file_path,
            target_tier="Cool",
            size_bytes=file.size_bytes,
            status=status,
            created_at=NOW - timedelta(days=1),
        )
        defaults.update(overrides)
        row = ArchiveOperation(**defaults)
        session.add(row)
        await session.commit()
        return row

    return _make


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeFileSource:
    """In-memory source document system."""

    def __init__(self) -> None:
        self.listings: dict[str, list[SourceFile]] = {}
        self.contents: dict[str, bytes] = {}
        self.uploads: list[tuple[FileRef, bytes]] = []
        self.downloads: list[FileRef] = []
        self.list_errors = 0
        self.download_errors = 0
        self.upload_errors = 0

    async def list_files(self, tenant_external_id: str, site_id: str) -> list[SourceFile]:
        if self.list_errors:
            self.list_errors -= 1
            raise TransientIOError("source throttled")
        return list(self.listings.get(site_id, []))

    async def download_file(self, ref: FileRef) -> bytes:
        self.downloads.append(ref)
        if self.download_errors:
            self.download_errors -= 1
            raise TransientIOError("source unavailable")
        return self.contents.get(ref.item_id, f"content of {ref.item_id}".encode())

    async def upload_file(self, ref: FileRef, data: bytes) -> None:
        if self.upload_errors:
            self.upload_errors -= 1
            raise TransientIOError("source unavailable")
        self.uploads.append((ref, data))


class FakeTieredStore:
    """In-memory tiered object store.

    ``corrupt`` makes ``stat_object`` report a wrong checksum; ``readable``
    controls whether rehydration-tier objects have been restored.
    """

    def __init__(self) -> None:
        self.objects: dict[str, dict] = {}
        self.puts: list[str] = []
        self.deleted: list[str] = []
        self.restores: list[str] = []
        self.put_errors = 0
        self.corrupt = False
        self.readable = False

    def seed(self, key: str, data: bytes, tier: str) -> None:
        self.objects[key] = {"data": data, "tier": tier}

    async def put_object(self, key, data, tier, metadata=None) -> ObjectInfo:
        if self.put_errors:
            self.put_errors -= 1
            raise TransientIOError("store throttled")
        self.puts.append(key)
        self.objects[key] = {"data": data, "tier": tier, "metadata": metadata or {}}
        return ObjectInfo(key=key, size_bytes=len(data), sha256=sha256_hex(data), tier=tier)

    async def get_object(self, key: str) -> bytes:
        return self.objects[key]["data"]

    async def stat_object(self, key: str) -> ObjectInfo | None:
        obj = self.objects.get(key)
        if obj is None:
            return None
        sha = "0" * 64 if self.corrupt else sha256_hex(obj["data"])
        return ObjectInfo(key=key, size_bytes=len(obj["data"]), sha256=sha, tier=obj["tier"])

    async def set_tier(self, key: str, tier: str) -> None:
        obj = self.objects[key]
        if obj["tier"] in REHYDRATION_TIERS and tier not in REHYDRATION_TIERS:
            self.restores.append(key)
            return
        obj["tier"] = tier

    async def get_tier(self, key: str) -> str | None:
        obj = self.objects.get(key)
        return obj["tier"] if obj is not None else None

    async def is_readable(self, key: str) -> bool:
        obj = self.objects.get(key)
        if obj is None:
            return False
        return obj["tier"] not in REHYDRATION_TIERS or self.readable

    async def delete_object(self, key: str) -> None:
        self.deleted.append(key)
        self.objects.pop(key, None)


@pytest.fixture
def fake_source() -> FakeFileSource:
    return FakeFileSource()


@pytest.fixture
def fake_store() -> FakeTieredStore:
    return FakeTieredStore()

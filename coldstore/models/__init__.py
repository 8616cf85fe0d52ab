"""ORM model registry - import all models so Alembic autogenerate can detect them."""

from coldstore.models.archive_operation import ArchiveOperation, RetrievalOperation
from coldstore.models.archive_rule import ArchiveRule
from coldstore.models.audit_entry import AuditEntry
from coldstore.models.file_record import FileRecord
from coldstore.models.savings_snapshot import MonthlySavingsSnapshot
from coldstore.models.scan_workflow import ScanWorkflow
from coldstore.models.tenant import ClientTenant, MspOrganization, Site

__all__ = [
    "MspOrganization",
    "ClientTenant",
    "Site",
    "FileRecord",
    "ArchiveRule",
    "ArchiveOperation",
    "RetrievalOperation",
    "MonthlySavingsSnapshot",
    "ScanWorkflow",
    "AuditEntry",
]

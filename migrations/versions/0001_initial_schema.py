"""Initial schema: tenants, sites, files, rules, operations, snapshots, scans, audit

Revision ID: 0001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ARCHIVE_STATUSES = (
    "Pending", "AwaitingApproval", "ReviewRequested", "Approved", "Archiving",
    "Archived", "Failed", "Vetoed", "VetoAccepted", "VetoOverridden", "Excluded",
)
_RETRIEVAL_STATUSES = ("Pending", "Rehydrating", "Retrieving", "Completed", "Failed")


def _enum_sql(name: str, values: Sequence[str]) -> str:
    return f"CREATE TYPE {name} AS ENUM ({', '.join(repr(v) for v in values)})"


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _fk(column: str, target: str, *, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(
        column,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    # --- Custom ENUM types ---
    tenant_status = postgresql.ENUM(
        "Pending", "Connected", "Disconnected", "Error", name="tenant_status", create_type=False
    )
    file_archive_status = postgresql.ENUM(
        "Active", "AwaitingApproval", "Archived", name="file_archive_status", create_type=False
    )
    archive_rule_type = postgresql.ENUM(
        "age", "size", "type", "owner", "exclusion", name="archive_rule_type", create_type=False
    )
    archive_operation_status = postgresql.ENUM(
        *_ARCHIVE_STATUSES, name="archive_operation_status", create_type=False
    )
    retrieval_operation_status = postgresql.ENUM(
        *_RETRIEVAL_STATUSES, name="retrieval_operation_status", create_type=False
    )
    scan_runtime_status = postgresql.ENUM(
        "Pending", "Running", "Completed", "Failed", name="scan_runtime_status", create_type=False
    )

    op.execute(_enum_sql("tenant_status", ("Pending", "Connected", "Disconnected", "Error")))
    op.execute(_enum_sql("file_archive_status", ("Active", "AwaitingApproval", "Archived")))
    op.execute(_enum_sql("archive_rule_type", ("age", "size", "type", "owner", "exclusion")))
    op.execute(_enum_sql("archive_operation_status", _ARCHIVE_STATUSES))
    op.execute(_enum_sql("retrieval_operation_status", _RETRIEVAL_STATUSES))
    op.execute(_enum_sql("scan_runtime_status", ("Pending", "Running", "Completed", "Failed")))

    # --- msp_organization ---
    op.create_table(
        "msp_organization",
        _uuid_pk(),
        sa.Column("name", sa.String(255), nullable=False),
        _created_at(),
    )

    # --- client_tenant ---
    op.create_table(
        "client_tenant",
        _uuid_pk(),
        _fk("msp_org_id", "msp_organization.id"),
        sa.Column("external_tenant_id", sa.String(64), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("status", tenant_status, nullable=False, server_default="Pending"),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_scanned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scan_schedule_timezone", sa.String(64), nullable=True),
        sa.Column("auto_approval_days", sa.Integer(), nullable=True, server_default="7"),
        sa.Column("review_flagged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notification_webhook_url", sa.Text(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("msp_org_id", "external_tenant_id", name="uq_client_tenant_external"),
        sa.CheckConstraint(
            "auto_approval_days IS NULL OR auto_approval_days BETWEEN 0 AND 365",
            name="ck_client_tenant_auto_approval_days",
        ),
    )
    op.create_index("ix_client_tenant_msp_org_id", "client_tenant", ["msp_org_id"])

    # --- site ---
    op.create_table(
        "site",
        _uuid_pk(),
        _fk("tenant_id", "client_tenant.id"),
        sa.Column("site_id", sa.String(255), nullable=False),
        sa.Column("url", sa.Text(), nullable=False, server_default=""),
        sa.Column("display_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("storage_used_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("is_selected", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("owner_email", sa.String(320), nullable=True),
        sa.UniqueConstraint("tenant_id", "site_id", name="uq_site_tenant_site"),
    )
    op.create_index("ix_site_tenant_id", "site", ["tenant_id"])

    # --- file_record ---
    op.create_table(
        "file_record",
        _uuid_pk(),
        _fk("msp_org_id", "msp_organization.id"),
        _fk("tenant_id", "client_tenant.id"),
        sa.Column("site_id", sa.String(255), nullable=False),
        sa.Column("drive_id", sa.String(255), nullable=False),
        sa.Column("item_id", sa.String(255), nullable=False),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("file_path", sa.Text(), nullable=False),
        sa.Column("file_type", sa.String(32), nullable=False, server_default=""),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("owner", sa.String(320), nullable=True),
        sa.Column("compliance_tags", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_modified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archive_status", file_archive_status, nullable=False, server_default="Active"),
        sa.Column("blob_tier", sa.String(16), nullable=True),
        sa.Column(
            "scanned_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "tenant_id", "site_id", "drive_id", "item_id", name="uq_file_record_identity"
        ),
    )
    op.create_index("ix_file_record_tenant_status", "file_record", ["tenant_id", "archive_status"])

    # --- archive_rule ---
    op.create_table(
        "archive_rule",
        _uuid_pk(),
        _fk("msp_org_id", "msp_organization.id"),
        _fk("tenant_id", "client_tenant.id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("rule_type", archive_rule_type, nullable=False),
        sa.Column("criteria", postgresql.JSONB(), nullable=False),
        sa.Column("target_tier", sa.String(16), nullable=False, server_default="Cool"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(255), nullable=False),
        _created_at(),
    )
    op.create_index("ix_archive_rule_tenant_id", "archive_rule", ["tenant_id"])

    # --- archive_operation ---
    op.create_table(
        "archive_operation",
        _uuid_pk(),
        sa.Column("operation_id", sa.String(64), nullable=False),
        _fk("msp_org_id", "msp_organization.id"),
        _fk("tenant_id", "client_tenant.id"),
        _fk("file_id", "file_record.id"),
        _fk("rule_id", "archive_rule.id", nullable=True, ondelete="SET NULL"),
        sa.Column("site_id", sa.String(255), nullable=False),
        sa.Column("action", sa.String(16), nullable=False, server_default="archive"),
        sa.Column("cycle", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("source_path", sa.Text(), nullable=False),
        sa.Column("destination_path", sa.Text(), nullable=False, server_default=""),
        sa.Column("target_tier", sa.String(16), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("status", archive_operation_status, nullable=False, server_default="Pending"),
        sa.Column("approved_by", sa.String(255), nullable=True),
        sa.Column("vetoed_by", sa.String(255), nullable=True),
        sa.Column("veto_reason", sa.Text(), nullable=True),
        sa.Column("vetoed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("awaiting_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_delivered", sa.Boolean(), nullable=True),
        sa.Column("notification_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notification_error", sa.Text(), nullable=True),
        sa.Column("conversation_id", sa.String(255), nullable=True),
        sa.Column("error_message", sa.String(2000), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("operation_id", name="uq_archive_operation_operation_id"),
        # Approval and veto are mutually exclusive.
        sa.CheckConstraint(
            "approved_by IS NULL OR vetoed_by IS NULL",
            name="ck_archive_operation_approved_xor_vetoed",
        ),
    )
    op.create_index(
        "ix_archive_operation_tenant_status", "archive_operation", ["tenant_id", "status"]
    )
    op.create_index(
        "ix_archive_operation_file", "archive_operation", ["file_id", "action", "cycle"]
    )
    op.create_index("ix_archive_operation_site_id", "archive_operation", ["site_id"])

    # --- retrieval_operation ---
    op.create_table(
        "retrieval_operation",
        _uuid_pk(),
        sa.Column("operation_id", sa.String(64), nullable=False),
        _fk("msp_org_id", "msp_organization.id"),
        _fk("tenant_id", "client_tenant.id"),
        _fk("file_id", "file_record.id"),
        sa.Column("cycle", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("source_path", sa.Text(), nullable=False),
        sa.Column("blob_key", sa.Text(), nullable=False),
        sa.Column("tier_at_request", sa.String(16), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("requested_by", sa.String(255), nullable=False),
        sa.Column(
            "status", retrieval_operation_status, nullable=False, server_default="Pending"
        ),
        sa.Column("rehydration_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.String(2000), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("operation_id", name="uq_retrieval_operation_operation_id"),
    )
    op.create_index(
        "ix_retrieval_operation_tenant_status", "retrieval_operation", ["tenant_id", "status"]
    )

    # --- monthly_savings_snapshot ---
    op.create_table(
        "monthly_savings_snapshot",
        _uuid_pk(),
        _fk("msp_org_id", "msp_organization.id"),
        _fk("tenant_id", "client_tenant.id", nullable=True),
        sa.Column("scope_key", sa.String(64), nullable=False),
        sa.Column("month", sa.String(7), nullable=False),
        sa.Column("total_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("active_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("stale_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("archived_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "archived_bytes_by_tier",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'"),
        ),
        sa.Column("achieved_savings", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("potential_savings", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column(
            "captured_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "msp_org_id", "scope_key", "month", name="uq_monthly_savings_snapshot_scope_month"
        ),
    )

    # --- scan_workflow ---
    op.create_table(
        "scan_workflow",
        _uuid_pk(),
        sa.Column("instance_id", sa.String(64), nullable=False),
        _fk("tenant_id", "client_tenant.id"),
        sa.Column("runtime_status", scan_runtime_status, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("files_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.UniqueConstraint("instance_id", name="uq_scan_workflow_instance_id"),
    )

    # --- audit_entry ---
    op.create_table(
        "audit_entry",
        _uuid_pk(),
        _fk("msp_org_id", "msp_organization.id", nullable=True),
        _fk("tenant_id", "client_tenant.id", nullable=True),
        sa.Column("actor_id", sa.String(255), nullable=False),
        sa.Column("actor_name", sa.String(255), nullable=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("correlation_id", sa.String(128), nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("hmac_signature", sa.Text(), nullable=False),
    )
    op.create_index("ix_audit_entry_tenant_timestamp", "audit_entry", ["tenant_id", "timestamp"])

    # Append-only trigger: prevent UPDATE and DELETE on audit_entry
    op.execute(
        """
        CREATE OR REPLACE FUNCTION fn_audit_entry_append_only()
        RETURNS TRIGGER LANGUAGE plpgsql AS $$
        BEGIN
            IF TG_OP = 'UPDATE' THEN
                RAISE EXCEPTION 'audit_entry is append-only: UPDATE is not permitted';
            ELSIF TG_OP = 'DELETE' THEN
                RAISE EXCEPTION 'audit_entry is append-only: DELETE is not permitted';
            END IF;
            RETURN NULL;
        END;
        $$
        """
    )
    op.execute(
        """
        CREATE TRIGGER tg_audit_entry_append_only
        BEFORE UPDATE OR DELETE ON audit_entry
        FOR EACH ROW EXECUTE FUNCTION fn_audit_entry_append_only()
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS tg_audit_entry_append_only ON audit_entry")
    op.execute("DROP FUNCTION IF EXISTS fn_audit_entry_append_only()")
    op.drop_index("ix_audit_entry_tenant_timestamp", table_name="audit_entry")
    op.drop_table("audit_entry")

    op.drop_table("scan_workflow")
    op.drop_table("monthly_savings_snapshot")

    op.drop_index("ix_retrieval_operation_tenant_status", table_name="retrieval_operation")
    op.drop_table("retrieval_operation")

    op.drop_index("ix_archive_operation_site_id", table_name="archive_operation")
    op.drop_index("ix_archive_operation_file", table_name="archive_operation")
    op.drop_index("ix_archive_operation_tenant_status", table_name="archive_operation")
    op.drop_table("archive_operation")

    op.drop_index("ix_archive_rule_tenant_id", table_name="archive_rule")
    op.drop_table("archive_rule")

    op.drop_index("ix_file_record_tenant_status", table_name="file_record")
    op.drop_table("file_record")

    op.drop_index("ix_site_tenant_id", table_name="site")
    op.drop_table("site")

    op.drop_index("ix_client_tenant_msp_org_id", table_name="client_tenant")
    op.drop_table("client_tenant")

    op.drop_table("msp_organization")

    for name in (
        "scan_runtime_status",
        "retrieval_operation_status",
        "archive_operation_status",
        "archive_rule_type",
        "file_archive_status",
        "tenant_status",
    ):
        op.execute(f"DROP TYPE IF EXISTS {name}")

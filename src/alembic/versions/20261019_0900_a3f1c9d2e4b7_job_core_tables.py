"""Job core tables: Notification, Media, ExportJob, AuditLog

Revision ID: a3f1c9d2e4b7
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "a3f1c9d2e4b7"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

notification_channel = sa.Enum("in-app", "email", "push", "sms", name="notificationchannel")
notification_status = sa.Enum("pending", "sent", "failed", "expanded", name="notificationstatus")
storage_type = sa.Enum("local", "s3", name="storagetype")
media_status = sa.Enum("pending", "scanned", "rejected", name="mediastatus")
export_status = sa.Enum("queued", "running", "completed", "failed", name="exportstatus")


def upgrade() -> None:
    op.create_table(
        "Notification",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient", sa.String(64), nullable=True),
        sa.Column("recipient_group", sa.JSON(none_as_null=True), nullable=True),
        sa.Column("channel", notification_channel, nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("status", notification_status, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("job_id", sa.String(64), nullable=True),
        sa.Column("fanout_ids", sa.JSON(none_as_null=True), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "(recipient IS NULL) <> (recipient_group IS NULL)",
            name="ck_notification_recipient_xor_group",
        ),
    )
    op.create_index("ix_notification_recipient_status", "Notification", ["recipient", "status"])
    op.create_index("ix_notification_created_at", "Notification", ["created_at"])
    op.create_index("ix_notification_job_id", "Notification", ["job_id"])

    op.create_table(
        "Media",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("mimetype", sa.String(128), nullable=True),
        sa.Column("size", sa.BigInteger(), nullable=True),
        sa.Column("storage_type", storage_type, nullable=False),
        sa.Column("storage_key", sa.String(1024), nullable=False),
        sa.Column("uploaded_by", sa.String(64), nullable=True),
        sa.Column("status", media_status, nullable=False),
        sa.Column("scan_result", sa.Text(), nullable=False),
        sa.Column("scanned_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_media_status", "Media", ["status"])

    op.create_table(
        "ExportJob",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_id", sa.String(64), nullable=True),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("requested_by", sa.String(64), nullable=True),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.Column("status", export_status, nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=True),
        sa.Column("result_path", sa.String(1024), nullable=True),
        sa.Column("error", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_exportjob_status", "ExportJob", ["status"])
    op.create_index("ix_exportjob_type_entity", "ExportJob", ["type", "entity_id"])

    op.create_table(
        "AuditLog",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("resource_type", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.String(64), nullable=True),
        sa.Column("before", sa.JSON(none_as_null=True), nullable=True),
        sa.Column("after", sa.JSON(none_as_null=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_auditlog_resource", "AuditLog", ["resource_type", "resource_id"])
    op.create_index("ix_auditlog_action", "AuditLog", ["action"])


def downgrade() -> None:
    op.drop_index("ix_auditlog_action", table_name="AuditLog")
    op.drop_index("ix_auditlog_resource", table_name="AuditLog")
    op.drop_table("AuditLog")
    op.drop_index("ix_exportjob_type_entity", table_name="ExportJob")
    op.drop_index("ix_exportjob_status", table_name="ExportJob")
    op.drop_table("ExportJob")
    op.drop_index("ix_media_status", table_name="Media")
    op.drop_table("Media")
    op.drop_index("ix_notification_job_id", table_name="Notification")
    op.drop_index("ix_notification_created_at", table_name="Notification")
    op.drop_index("ix_notification_recipient_status", table_name="Notification")
    op.drop_table("Notification")

    bind = op.get_bind()
    for enum in (export_status, media_status, storage_type, notification_status, notification_channel):
        enum.drop(bind, checkfirst=True)

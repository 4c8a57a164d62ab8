"""Create keyword intelligence tables

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create keyword bank, enrichment queue, integration and tracked keyword tables."""

    op.create_table(
        "keyword_bank",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("keyword", sa.String(255), nullable=False),
        sa.Column("country_code", sa.String(3), nullable=False),
        sa.Column("language_code", sa.String(10), nullable=False, server_default="en"),
        sa.Column("is_data_found", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("volume", sa.Integer(), nullable=True),
        sa.Column("cpc", sa.Float(), nullable=True),
        sa.Column("competition", sa.Float(), nullable=True),
        sa.Column("difficulty", sa.Integer(), nullable=True),
        sa.Column("history_trend", sa.JSON(), nullable=True),
        sa.Column("keyword_intent", sa.String(20), nullable=True),
        sa.Column("data_updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("keyword", "country_code", "language_code", name="uq_keyword_bank_keyword_locale"),
    )
    op.create_index("ix_keyword_bank_data_updated_at", "keyword_bank", ["data_updated_at"])
    op.create_index("ix_keyword_bank_country_language", "keyword_bank", ["country_code", "language_code"])

    op.create_table(
        "enrichment_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("job_type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("source_data", sa.JSON(), nullable=False),
        sa.Column("progress", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(128), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_enrichment_jobs_owner_id", "enrichment_jobs", ["owner_id"])
    op.create_index("ix_enrichment_jobs_dequeue", "enrichment_jobs", ["status", "priority", "created_at"])
    op.create_index("ix_enrichment_jobs_owner_status", "enrichment_jobs", ["owner_id", "status"])

    op.create_table(
        "site_integrations",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=True),
        sa.Column("service_name", sa.String(100), nullable=False),
        sa.Column("api_key", sa.Text(), nullable=True),
        sa.Column("api_url", sa.String(500), nullable=False),
        sa.Column("quota_limit", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("quota_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("quota_reset_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("quota_reset_interval", sa.String(10), nullable=False, server_default="monthly"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("health_status", sa.String(20), nullable=True),
        sa.Column("last_health_check", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("service_name", name="uq_site_integrations_service_name"),
    )

    op.create_table(
        "integration_usage_logs",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("service_name", sa.String(100), nullable=False),
        sa.Column("operation_type", sa.String(50), nullable=False, server_default="keyword_export"),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("successful_requests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_requests", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("usage_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index(
        "ix_integration_usage_logs_service_created",
        "integration_usage_logs",
        ["service_name", "created_at"],
    )

    op.create_table(
        "tracked_keywords",
        sa.Column("id", postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("keyword", sa.String(255), nullable=False),
        sa.Column("country_code", sa.String(3), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("keyword_bank_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("intelligence_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["keyword_bank_id"], ["keyword_bank.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_tracked_keywords_owner_id", "tracked_keywords", ["owner_id"])
    op.create_index("ix_tracked_keywords_unenriched", "tracked_keywords", ["is_active", "keyword_bank_id"])


def downgrade() -> None:
    """Drop keyword intelligence tables."""
    op.drop_index("ix_tracked_keywords_unenriched", table_name="tracked_keywords")
    op.drop_index("ix_tracked_keywords_owner_id", table_name="tracked_keywords")
    op.drop_table("tracked_keywords")

    op.drop_index("ix_integration_usage_logs_service_created", table_name="integration_usage_logs")
    op.drop_table("integration_usage_logs")

    op.drop_table("site_integrations")

    op.drop_index("ix_enrichment_jobs_owner_status", table_name="enrichment_jobs")
    op.drop_index("ix_enrichment_jobs_dequeue", table_name="enrichment_jobs")
    op.drop_index("ix_enrichment_jobs_owner_id", table_name="enrichment_jobs")
    op.drop_table("enrichment_jobs")

    op.drop_index("ix_keyword_bank_country_language", table_name="keyword_bank")
    op.drop_index("ix_keyword_bank_data_updated_at", table_name="keyword_bank")
    op.drop_table("keyword_bank")

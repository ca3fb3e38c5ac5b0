"""create ingestion pipeline tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb() -> postgresql.JSONB:
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "pipeline_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, comment="started, processing, completed, failed"),
        sa.Column("fetch_status", sa.String(length=32), nullable=False),
        sa.Column("extract_status", sa.String(length=32), nullable=False),
        sa.Column("enrich_status", sa.String(length=32), nullable=False),
        sa.Column("persist_status", sa.String(length=32), nullable=False),
        sa.Column(
            "stage_metrics",
            _jsonb(),
            nullable=False,
            comment="Per-stage metrics payloads keyed by stage name",
        ),
        sa.Column("error_details", _jsonb(), nullable=True),
        sa.Column("failed_stage", sa.String(length=32), nullable=True),
        sa.Column("resumed_stage", sa.String(length=32), nullable=True),
        sa.Column("resume_count", sa.Integer(), nullable=False),
        sa.Column(
            "checkpoint_data",
            _jsonb(),
            nullable=False,
            comment="Stage checkpoints used to resume a failed run",
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_runs_source_id", "pipeline_runs", ["source_id"], unique=False)
    op.create_index("ix_pipeline_runs_status", "pipeline_runs", ["status"], unique=False)
    op.create_index(
        "ix_pipeline_runs_source_id_started_at",
        "pipeline_runs",
        ["source_id", "started_at"],
        unique=False,
    )

    op.create_table(
        "raw_payload_cache",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("content_hash", sa.String(length=128), nullable=False),
        sa.Column("payload", _jsonb(), nullable=False),
        sa.Column(
            "request_metadata",
            _jsonb(),
            nullable=False,
            comment="api_endpoint, call_type, execution_time_ms, record_count, request_details",
        ),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("call_count", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_id", "content_hash", name="uq_raw_payload_cache_source_hash"),
    )
    op.create_index("ix_raw_payload_cache_last_seen_at", "raw_payload_cache", ["last_seen_at"], unique=False)

    op.create_table(
        "canonical_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source_id", sa.String(length=128), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("url", sa.String(length=2048), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=True, comment="open, closed, upcoming"),
        sa.Column("minimum_award", sa.Numeric(18, 2), nullable=True),
        sa.Column("maximum_award", sa.Numeric(18, 2), nullable=True),
        sa.Column("total_funding_available", sa.Numeric(18, 2), nullable=True),
        sa.Column("open_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("posted_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("api_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("eligible_applicants", _jsonb(), nullable=True),
        sa.Column("eligible_project_types", _jsonb(), nullable=True),
        sa.Column("eligible_activities", _jsonb(), nullable=True),
        sa.Column("eligible_locations", _jsonb(), nullable=True),
        sa.Column("categories", _jsonb(), nullable=True),
        sa.Column("tags", _jsonb(), nullable=True),
        sa.Column("agency_name", sa.String(length=500), nullable=True),
        sa.Column("cost_share_required", sa.Boolean(), nullable=True),
        sa.Column("cost_share_percentage", sa.Float(), nullable=True),
        sa.Column("is_national", sa.Boolean(), nullable=True),
        sa.Column("actionable_summary", sa.Text(), nullable=True),
        sa.Column("enhanced_description", sa.Text(), nullable=True),
        sa.Column("relevance_score", sa.Float(), nullable=True),
        sa.Column("relevance_reasoning", sa.Text(), nullable=True),
        sa.Column("raw_payload_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("enrichment", _jsonb(), nullable=True),
        sa.Column(
            "change_history",
            _jsonb(),
            nullable=False,
            comment="Audit entries for each applied update patch",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["raw_payload_id"], ["raw_payload_cache.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_id", "external_id", name="uq_canonical_records_source_external_id"),
    )
    op.create_index(
        "ix_canonical_records_source_id_title",
        "canonical_records",
        ["source_id", "title"],
        unique=False,
    )
    op.create_index("ix_canonical_records_close_date", "canonical_records", ["close_date"], unique=False)
    op.create_index("ix_canonical_records_status", "canonical_records", ["status"], unique=False)

    op.create_table(
        "canonical_record_tags",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("record_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tag_type", sa.String(length=32), nullable=False),
        sa.Column("value", sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(["record_id"], ["canonical_records.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "record_id",
            "tag_type",
            "value",
            name="uq_canonical_record_tags_record_type_value",
        ),
    )
    op.create_index(
        "ix_canonical_record_tags_tag_type_value",
        "canonical_record_tags",
        ["tag_type", "value"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_canonical_record_tags_tag_type_value", table_name="canonical_record_tags")
    op.drop_table("canonical_record_tags")

    op.drop_index("ix_canonical_records_status", table_name="canonical_records")
    op.drop_index("ix_canonical_records_close_date", table_name="canonical_records")
    op.drop_index("ix_canonical_records_source_id_title", table_name="canonical_records")
    op.drop_table("canonical_records")

    op.drop_index("ix_raw_payload_cache_last_seen_at", table_name="raw_payload_cache")
    op.drop_table("raw_payload_cache")

    op.drop_index("ix_pipeline_runs_source_id_started_at", table_name="pipeline_runs")
    op.drop_index("ix_pipeline_runs_status", table_name="pipeline_runs")
    op.drop_index("ix_pipeline_runs_source_id", table_name="pipeline_runs")
    op.drop_table("pipeline_runs")

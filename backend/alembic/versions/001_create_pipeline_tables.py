"""Create connection, metrics, rule, recommendation and execution log tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    insp = sa.inspect(conn)
    existing = set(insp.get_table_names())

    if "ads_platform_connections" not in existing:
        op.create_table(
            "ads_platform_connections",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("platform", sa.String(20), nullable=False),
            sa.Column("account_id", sa.String(255), nullable=False),
            sa.Column("account_name", sa.String(512), nullable=True),
            sa.Column("credentials", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("status", sa.String(20), nullable=True, server_default="active"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("last_synced_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "platform", "account_id", name="uq_connection_per_account"),
        )
        op.create_index("ix_ads_platform_connections_tenant_id", "ads_platform_connections", ["tenant_id"])
        op.create_index("ix_ads_platform_connections_active", "ads_platform_connections", ["is_active", "platform"])

    if "ad_metrics_daily" not in existing:
        op.create_table(
            "ad_metrics_daily",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("platform", sa.String(20), nullable=False),
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("campaign_name", sa.String(512), nullable=True),
            sa.Column("metric_date", sa.Date(), nullable=False),
            sa.Column("campaign_status", sa.String(50), nullable=True),
            sa.Column("daily_budget", sa.Float(), nullable=True),
            sa.Column("spend", sa.Float(), nullable=True, server_default="0"),
            sa.Column("impressions", sa.BigInteger(), nullable=True, server_default="0"),
            sa.Column("clicks", sa.BigInteger(), nullable=True, server_default="0"),
            sa.Column("conversions", sa.Float(), nullable=True, server_default="0"),
            sa.Column("revenue", sa.Float(), nullable=True, server_default="0"),
            sa.Column("cpc", sa.Float(), nullable=True, server_default="0"),
            sa.Column("ctr", sa.Float(), nullable=True, server_default="0"),
            sa.Column("cpm", sa.Float(), nullable=True, server_default="0"),
            sa.Column("cpa", sa.Float(), nullable=True, server_default="0"),
            sa.Column("roas", sa.Float(), nullable=True, server_default="0"),
            sa.Column("raw_metrics", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("synced_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "tenant_id", "platform", "campaign_id", "metric_date", name="uq_metric_per_campaign_day",
            ),
        )
        op.create_index("ix_ad_metrics_daily_tenant_date", "ad_metrics_daily", ["tenant_id", "metric_date"])
        op.create_index("ix_ad_metrics_daily_campaign", "ad_metrics_daily", ["platform", "campaign_id"])

    if "ads_rules" not in existing:
        op.create_table(
            "ads_rules",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("rule_name", sa.String(255), nullable=False),
            sa.Column("platform", sa.String(20), nullable=True, server_default="all"),
            sa.Column("rule_type", sa.String(30), nullable=False),
            sa.Column("conditions", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("actions", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("priority", sa.Integer(), nullable=True, server_default="0"),
            sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_ads_rules_tenant_active", "ads_rules", ["tenant_id", "is_active"])

    if "ads_recommendations" not in existing:
        op.create_table(
            "ads_recommendations",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("rule_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("platform", sa.String(20), nullable=False),
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("campaign_name", sa.String(512), nullable=True),
            sa.Column("recommendation_type", sa.String(30), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("evidence", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("current_value", sa.Float(), nullable=True),
            sa.Column("recommended_value", sa.Float(), nullable=True),
            sa.Column("impact_estimate", sa.Float(), nullable=True),
            sa.Column("confidence", sa.Float(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("status", sa.String(20), nullable=True, server_default="pending"),
            sa.Column("approved_by", sa.String(255), nullable=True),
            sa.Column("approved_at", sa.DateTime(), nullable=True),
            sa.Column("review_note", sa.Text(), nullable=True),
            sa.Column("execution_started_at", sa.DateTime(), nullable=True),
            sa.Column("executed_at", sa.DateTime(), nullable=True),
            sa.Column("execution_result", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["rule_id"], ["ads_rules.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_ads_recommendations_tenant_status", "ads_recommendations", ["tenant_id", "status"])
        op.create_index("ix_ads_recommendations_campaign", "ads_recommendations", ["platform", "campaign_id"])
        op.create_index("ix_ads_recommendations_created_at", "ads_recommendations", ["created_at"])
        op.create_index(
            "uq_ads_recommendations_pending",
            "ads_recommendations",
            ["tenant_id", "platform", "campaign_id", "recommendation_type"],
            unique=True,
            postgresql_where=sa.text("status = 'pending'"),
        )

    if "ads_execution_log" not in existing:
        op.create_table(
            "ads_execution_log",
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("recommendation_id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("platform", sa.String(20), nullable=False),
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("action", sa.String(30), nullable=False),
            sa.Column("request_payload", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("response_payload", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("status", sa.String(20), nullable=False),
            sa.Column("executed_by", sa.String(255), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["recommendation_id"], ["ads_recommendations.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_ads_execution_log_recommendation_id", "ads_execution_log", ["recommendation_id"])
        op.create_index("ix_ads_execution_log_tenant_created", "ads_execution_log", ["tenant_id", "created_at"])


def downgrade() -> None:
    op.drop_table("ads_execution_log")
    op.drop_index("uq_ads_recommendations_pending", table_name="ads_recommendations")
    op.drop_table("ads_recommendations")
    op.drop_table("ads_rules")
    op.drop_table("ad_metrics_daily")
    op.drop_table("ads_platform_connections")

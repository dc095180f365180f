"""
Ads Autopilot: Database Models
Platform connections, daily campaign metrics, optimization rules,
recommendations and the append-only execution log.
"""

import uuid
import enum
from datetime import date, datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, event, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID
from autopilot.database import Base


def _utcnow() -> datetime:
    """Naive UTC now: matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class Platform(str, enum.Enum):
    TIKTOK = "tiktok"
    META = "meta"
    GOOGLE = "google"
    SHOPEE = "shopee"


class ConnectionStatus(str, enum.Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"


class RuleType(str, enum.Enum):
    PAUSE = "pause"
    KILL = "kill"
    INCREASE_BUDGET = "increase_budget"
    DECREASE_BUDGET = "decrease_budget"
    SCALE = "scale"


class RecommendationStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"
    EXPIRED = "expired"


class ExecutionStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


# ══════════════════════════════════════════════════════════════════════
#  PLATFORM CONNECTIONS: One per (tenant, platform account)
# ══════════════════════════════════════════════════════════════════════

class PlatformConnection(Base):
    """Credentials and sync state for one advertising account of a tenant."""
    __tablename__ = "ads_platform_connections"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    account_name: Mapped[str] = mapped_column(String(512), nullable=True)
    # Fernet-encrypted JSON bundle (access_token, developer_token, partner_id, ...)
    credentials: Mapped[str] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(20), default=ConnectionStatus.ACTIVE.value)
    last_error: Mapped[str] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "account_id", name="uq_connection_per_account"),
        Index("ix_ads_platform_connections_tenant_id", "tenant_id"),
        Index("ix_ads_platform_connections_active", "is_active", "platform"),
    )

    @property
    def credential_bundle(self) -> dict[str, str]:
        from autopilot.crypto import decrypt_credentials
        return decrypt_credentials(self.credentials)


# ══════════════════════════════════════════════════════════════════════
#  METRICS: One row per tenant/platform/campaign/date
# ══════════════════════════════════════════════════════════════════════

class MetricRow(Base):
    """
    Normalized daily campaign performance. Re-ingesting the same
    (tenant, platform, campaign, date) overwrites the row.
    """
    __tablename__ = "ad_metrics_daily"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(512), nullable=True)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    campaign_status: Mapped[str] = mapped_column(String(50), nullable=True)
    daily_budget: Mapped[float] = mapped_column(Float, nullable=True)
    spend: Mapped[float] = mapped_column(Float, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(BigInteger, default=0)
    conversions: Mapped[float] = mapped_column(Float, default=0.0)
    revenue: Mapped[float] = mapped_column(Float, default=0.0)
    cpc: Mapped[float] = mapped_column(Float, default=0.0)
    ctr: Mapped[float] = mapped_column(Float, default=0.0)
    cpm: Mapped[float] = mapped_column(Float, default=0.0)
    cpa: Mapped[float] = mapped_column(Float, default=0.0)
    roas: Mapped[float] = mapped_column(Float, default=0.0)
    raw_metrics: Mapped[dict] = mapped_column(JSON, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "campaign_id", "metric_date", name="uq_metric_per_campaign_day"),
        Index("ix_ad_metrics_daily_tenant_date", "tenant_id", "metric_date"),
        Index("ix_ad_metrics_daily_campaign", "platform", "campaign_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RULES: Tenant-authored optimization rules
# ══════════════════════════════════════════════════════════════════════

class Rule(Base):
    """
    conditions: [{"metric": "roas", "operator": "<", "value": 1.5, "lookback_days": 3}, ...]
    actions:    {"budget_change_percent": 20, "notify_before_execute": true}
    """
    __tablename__ = "ads_rules"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), default="all")  # all, tiktok, meta, google, shopee
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    conditions: Mapped[list] = mapped_column(JSON, default=list)
    actions: Mapped[dict] = mapped_column(JSON, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_ads_rules_tenant_active", "tenant_id", "is_active"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RECOMMENDATIONS: Proposed changes awaiting approval / execution
# ══════════════════════════════════════════════════════════════════════

class Recommendation(Base):
    """
    pending -> approved -> executing -> executed | failed
    pending -> rejected ; pending/approved -> expired
    Never deleted: superseded only by status transitions.
    """
    __tablename__ = "ads_recommendations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    rule_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("ads_rules.id", ondelete="SET NULL"), nullable=True)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(512), nullable=True)
    recommendation_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=True)
    # Averages, sample counts and thresholds that triggered the rule
    evidence: Mapped[dict] = mapped_column(JSON, nullable=True)
    current_value: Mapped[float] = mapped_column(Float, nullable=True)
    recommended_value: Mapped[float] = mapped_column(Float, nullable=True)
    impact_estimate: Mapped[float] = mapped_column(Float, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=RecommendationStatus.PENDING.value)
    approved_by: Mapped[str] = mapped_column(String(255), nullable=True)
    approved_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    review_note: Mapped[str] = mapped_column(Text, nullable=True)
    execution_started_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    execution_result: Mapped[dict] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    rule: Mapped["Rule"] = relationship("Rule")
    execution_logs: Mapped[list["ExecutionLogEntry"]] = relationship(
        "ExecutionLogEntry", back_populates="recommendation", order_by="ExecutionLogEntry.created_at",
    )

    __table_args__ = (
        Index("ix_ads_recommendations_tenant_status", "tenant_id", "status"),
        Index("ix_ads_recommendations_campaign", "platform", "campaign_id"),
        Index("ix_ads_recommendations_created_at", "created_at"),
        # At most one pending recommendation per campaign and type
        Index(
            "uq_ads_recommendations_pending",
            "tenant_id", "platform", "campaign_id", "recommendation_type",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )


# ══════════════════════════════════════════════════════════════════════
#  EXECUTION LOG: Append-only record of every dispatch attempt
# ══════════════════════════════════════════════════════════════════════

class ExecutionLogEntry(Base):
    """What we actually sent to the platform and what came back."""
    __tablename__ = "ads_execution_log"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    recommendation_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("ads_recommendations.id"), nullable=False)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    request_payload: Mapped[dict] = mapped_column(JSON, nullable=True)
    response_payload: Mapped[dict] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    executed_by: Mapped[str] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    recommendation: Mapped["Recommendation"] = relationship("Recommendation", back_populates="execution_logs")

    __table_args__ = (
        Index("ix_ads_execution_log_recommendation_id", "recommendation_id"),
        Index("ix_ads_execution_log_tenant_created", "tenant_id", "created_at"),
    )


@event.listens_for(ExecutionLogEntry, "before_update")
def _reject_log_update(mapper, connection, target):
    raise ValueError("ExecutionLogEntry rows are append-only")

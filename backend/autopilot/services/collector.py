"""
Metrics Collector: Pulls today's campaign metrics from every active platform
connection and upserts them into ad_metrics_daily.

Fetches run concurrently (bounded by COLLECTOR_CONCURRENCY, each under
ADAPTER_TIMEOUT_SECONDS). Writes happen afterwards on the caller's session,
one savepoint per connection, so a failing connection never rolls back the
others.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from autopilot.adapters import AdapterFactory, NormalizedCampaignMetric, derive_metrics, get_adapter
from autopilot.adapters.base import today_utc
from autopilot.config import get_settings
from autopilot.errors import AutopilotError
from autopilot.models import ConnectionStatus, MetricRow, PlatformConnection
from autopilot.utils import safe_int, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _FetchOutcome:
    connection_id: uuid.UUID
    tenant_id: uuid.UUID
    platform: str
    account: str
    account_name: Optional[str] = None
    campaigns: list[NormalizedCampaignMetric] = field(default_factory=list)
    error: Optional[str] = None


async def load_active_connections(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID] = None,
    platform: Optional[str] = None,
) -> list[PlatformConnection]:
    query = select(PlatformConnection).where(PlatformConnection.is_active == True)  # noqa: E712
    if tenant_id:
        query = query.where(PlatformConnection.tenant_id == tenant_id)
    if platform:
        query = query.where(PlatformConnection.platform == platform)
    result = await db.execute(query.order_by(PlatformConnection.created_at))
    return list(result.scalars().all())


async def _fetch_one(
    connection: PlatformConnection,
    adapter_factory: AdapterFactory,
    semaphore: asyncio.Semaphore,
    timeout: float,
) -> _FetchOutcome:
    outcome = _FetchOutcome(
        connection_id=connection.id,
        tenant_id=connection.tenant_id,
        platform=connection.platform,
        account=connection.account_id,
        account_name=connection.account_name,
    )
    async with semaphore:
        try:
            adapter = adapter_factory(connection.platform)
            outcome.campaigns = await asyncio.wait_for(adapter.fetch_metrics(connection), timeout=timeout)
        except asyncio.TimeoutError:
            outcome.error = f"Timed out after {timeout:g}s fetching {connection.platform} metrics"
        except AutopilotError as e:
            outcome.error = e.message
        except Exception as e:
            logger.exception(f"Unexpected error fetching {connection.platform} account {connection.account_id}")
            outcome.error = str(e) or e.__class__.__name__

    if outcome.error:
        logger.warning(f"Collector: {outcome.platform} account {outcome.account} failed: {outcome.error}")
    return outcome


async def upsert_metric_rows(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    platform: str,
    campaigns: list[NormalizedCampaignMetric],
    metric_date: date,
) -> int:
    """
    Upsert one MetricRow per campaign for metric_date.
    If a row already exists for (tenant, platform, campaign, date), overwrite it.
    """
    stored = 0
    now = utcnow()
    for c in campaigns:
        if not c.campaign_id or c.campaign_id == "None":
            continue

        result = await db.execute(
            select(MetricRow).where(and_(
                MetricRow.tenant_id == tenant_id,
                MetricRow.platform == platform,
                MetricRow.campaign_id == c.campaign_id,
                MetricRow.metric_date == metric_date,
            ))
        )
        existing = result.scalar_one_or_none()

        m = derive_metrics(c.metrics)
        values = dict(
            campaign_name=c.campaign_name,
            campaign_status=c.status,
            daily_budget=c.daily_budget,
            spend=m["spend"],
            impressions=safe_int(m["impressions"]),
            clicks=safe_int(m["clicks"]),
            conversions=m["conversions"],
            revenue=m["revenue"],
            cpc=m["cpc"],
            ctr=m["ctr"],
            cpm=m["cpm"],
            cpa=m["cpa"],
            roas=m["roas"],
            raw_metrics=c.raw or None,
            synced_at=now,
        )

        if existing:
            for key, value in values.items():
                setattr(existing, key, value)
            existing.campaign_name = c.campaign_name or existing.campaign_name
        else:
            db.add(MetricRow(
                tenant_id=tenant_id,
                platform=platform,
                campaign_id=c.campaign_id,
                metric_date=metric_date,
                **values,
            ))
        stored += 1

    await db.flush()
    return stored


async def _mark_connection(db: AsyncSession, connection_id: uuid.UUID, error: Optional[str]) -> None:
    if error is None:
        values = {"status": ConnectionStatus.ACTIVE.value, "last_error": None, "last_synced_at": utcnow()}
    else:
        values = {"status": ConnectionStatus.DEGRADED.value, "last_error": error[:2000]}
    await db.execute(
        update(PlatformConnection)
        .where(PlatformConnection.id == connection_id)
        .values(updated_at=utcnow(), **values)
    )


async def collect_metrics(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID] = None,
    platform: Optional[str] = None,
    adapter_factory: Optional[AdapterFactory] = None,
    concurrency: Optional[int] = None,
    timeout: Optional[float] = None,
    metric_date: Optional[date] = None,
) -> dict:
    """
    Sync today's metrics for every active connection (optionally one tenant / platform).

    Returns {results, errors, synced_count, failed_count}. Per-connection failures
    are reported in `errors` and mark the connection degraded; they never fail the run.
    """
    settings = get_settings()
    adapter_factory = adapter_factory or get_adapter
    concurrency = max(1, concurrency or settings.collector_concurrency)
    timeout = timeout or settings.adapter_timeout_seconds
    metric_date = metric_date or today_utc()

    connections = await load_active_connections(db, tenant_id, platform)
    logger.info(f"Collector: {len(connections)} active connections (tenant={tenant_id}, platform={platform})")

    summary = {"results": [], "errors": [], "synced_count": 0, "failed_count": 0}
    if not connections:
        return summary

    semaphore = asyncio.Semaphore(concurrency)
    outcomes = await asyncio.gather(*(
        _fetch_one(conn, adapter_factory, semaphore, timeout) for conn in connections
    ))

    for outcome in outcomes:
        error = outcome.error
        if error is None:
            try:
                async with db.begin_nested():
                    stored = await upsert_metric_rows(
                        db, outcome.tenant_id, outcome.platform, outcome.campaigns, metric_date,
                    )
                    await _mark_connection(db, outcome.connection_id, None)
            except SQLAlchemyError as e:
                logger.error(f"Collector: storing {outcome.platform} account {outcome.account} failed: {e}")
                error = f"Failed to store metrics: {e.__class__.__name__}"

        if error is None:
            summary["results"].append({
                "platform": outcome.platform,
                "account": outcome.account,
                "account_name": outcome.account_name,
                "campaigns_synced": stored,
            })
            summary["synced_count"] += 1
        else:
            async with db.begin_nested():
                await _mark_connection(db, outcome.connection_id, error)
            summary["errors"].append({
                "platform": outcome.platform,
                "account": outcome.account,
                "error": error,
            })
            summary["failed_count"] += 1

    await db.commit()
    logger.info(
        f"Collector: {summary['synced_count']} synced, {summary['failed_count']} failed"
    )
    return summary

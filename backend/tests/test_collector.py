"""
Tests for the metrics collector: upsert idempotency, failure isolation,
connection status bookkeeping and timeouts.
"""

import uuid
from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from autopilot.errors import AdapterError, ConfigurationError
from autopilot.models import MetricRow, PlatformConnection
from autopilot.services import collector
from autopilot.services.collector import collect_metrics

TODAY = date(2026, 10, 19)

CAMPAIGNS = [
    {
        "campaign_id": "111",
        "campaign_name": "Prospecting",
        "status": "ENABLE",
        "daily_budget": 500000.0,
        "metrics": {"spend": 300000, "impressions": 120000, "clicks": 1500, "conversions": 12, "revenue": 240000},
    },
    {
        "campaign_id": "222",
        "campaign_name": "Retargeting",
        "status": "ENABLE",
        "daily_budget": None,
        "metrics": {"spend": "1000", "impressions": "0"},
    },
]


def _factory(adapters: dict):
    return lambda platform: adapters[platform]


async def _rows(db, **filters):
    query = select(MetricRow)
    for key, value in filters.items():
        query = query.where(getattr(MetricRow, key) == value)
    result = await db.execute(query.order_by(MetricRow.campaign_id))
    return result.scalars().all()


@pytest.mark.anyio
async def test_collects_and_derives_metrics(db, tenant_id, make_connection, fake_adapter):
    conn = await make_connection(tenant_id, "tiktok", account_id="adv-1", account_name="Main TikTok")
    adapters = {"tiktok": fake_adapter("tiktok", CAMPAIGNS)}

    result = await collect_metrics(db, adapter_factory=_factory(adapters), metric_date=TODAY)

    assert result["synced_count"] == 1
    assert result["failed_count"] == 0
    assert result["errors"] == []
    assert result["results"] == [
        {"platform": "tiktok", "account": "adv-1", "account_name": "Main TikTok", "campaigns_synced": 2},
    ]

    rows = await _rows(db, tenant_id=tenant_id)
    assert [r.campaign_id for r in rows] == ["111", "222"]
    first = rows[0]
    assert first.metric_date == TODAY
    assert first.cpc == 200.0
    assert first.ctr == 1.25
    assert first.cpa == 25000.0
    assert first.roas == 0.8
    # Missing counters default to 0 and ratios with empty denominators are 0
    second = rows[1]
    assert second.spend == 1000.0
    assert second.clicks == 0
    assert second.ctr == 0.0
    assert second.roas == 0.0

    refreshed = await db.get(PlatformConnection, conn.id, populate_existing=True)
    assert refreshed.status == "active"
    assert refreshed.last_synced_at is not None
    assert refreshed.last_error is None


@pytest.mark.anyio
async def test_resync_same_day_overwrites_instead_of_duplicating(db, tenant_id, make_connection, fake_adapter):
    await make_connection(tenant_id, "tiktok")
    adapter = fake_adapter("tiktok", CAMPAIGNS)
    factory = _factory({"tiktok": adapter})

    await collect_metrics(db, adapter_factory=factory, metric_date=TODAY)
    adapter.campaigns = [dict(CAMPAIGNS[0], metrics={"spend": 350000, "revenue": 700000})]
    await collect_metrics(db, adapter_factory=factory, metric_date=TODAY)

    count = (await db.execute(select(func.count()).select_from(MetricRow))).scalar()
    assert count == 2
    row = (await _rows(db, campaign_id="111"))[0]
    await db.refresh(row)
    assert row.spend == 350000.0
    assert row.roas == 2.0


@pytest.mark.anyio
async def test_one_failing_connection_does_not_abort_others(db, tenant_id, make_connection, fake_adapter):
    good = await make_connection(tenant_id, "tiktok", account_id="tt-1")
    bad = await make_connection(tenant_id, "meta", account_id="meta-1")
    adapters = {
        "tiktok": fake_adapter("tiktok", CAMPAIGNS),
        "meta": fake_adapter("meta", fail_with=AdapterError("meta API error [500]: boom")),
    }

    result = await collect_metrics(db, adapter_factory=_factory(adapters), metric_date=TODAY)

    assert result["synced_count"] == 1
    assert result["failed_count"] == 1
    assert result["errors"] == [{"platform": "meta", "account": "meta-1", "error": "meta API error [500]: boom"}]
    assert len(await _rows(db, platform="tiktok")) == 2
    assert await _rows(db, platform="meta") == []

    bad_conn = await db.get(PlatformConnection, bad.id, populate_existing=True)
    assert bad_conn.status == "degraded"
    assert "boom" in bad_conn.last_error
    good_conn = await db.get(PlatformConnection, good.id, populate_existing=True)
    assert good_conn.status == "active"


@pytest.mark.anyio
async def test_storage_failure_is_isolated_per_connection(db, tenant_id, make_connection, fake_adapter):
    failing = await make_connection(tenant_id, "tiktok", account_id="tt-1")
    healthy = await make_connection(tenant_id, "meta", account_id="meta-1")
    adapters = {"tiktok": fake_adapter("tiktok", CAMPAIGNS), "meta": fake_adapter("meta", CAMPAIGNS[:1])}
    upsert = collector.upsert_metric_rows

    async def _upsert(session, tenant, platform, campaigns, metric_date):
        if platform == "tiktok":
            raise IntegrityError("INSERT INTO ad_metrics_daily", {}, Exception("constraint failed"))
        return await upsert(session, tenant, platform, campaigns, metric_date)

    with patch("autopilot.services.collector.upsert_metric_rows", _upsert):
        result = await collect_metrics(db, adapter_factory=_factory(adapters), metric_date=TODAY)

    assert result["synced_count"] == 1
    assert result["errors"] == [
        {"platform": "tiktok", "account": "tt-1", "error": "Failed to store metrics: IntegrityError"},
    ]
    assert await _rows(db, platform="tiktok") == []
    assert [r.campaign_id for r in await _rows(db, platform="meta")] == ["111"]

    assert (await db.get(PlatformConnection, failing.id, populate_existing=True)).status == "degraded"
    assert (await db.get(PlatformConnection, healthy.id, populate_existing=True)).status == "active"


@pytest.mark.anyio
async def test_zero_campaigns_is_success(db, tenant_id, make_connection, fake_adapter):
    await make_connection(tenant_id, "shopee", account_id="shop-1")

    result = await collect_metrics(db, adapter_factory=_factory({"shopee": fake_adapter("shopee", [])}))

    assert result["synced_count"] == 1
    assert result["results"][0]["campaigns_synced"] == 0
    assert result["errors"] == []


@pytest.mark.anyio
async def test_no_connections_is_noop(db):
    result = await collect_metrics(db, adapter_factory=lambda p: pytest.fail("adapter should not be built"))
    assert result == {"results": [], "errors": [], "synced_count": 0, "failed_count": 0}


@pytest.mark.anyio
async def test_slow_connection_times_out_individually(db, tenant_id, make_connection, fake_adapter):
    await make_connection(tenant_id, "google", account_id="123-456-7890")
    await make_connection(tenant_id, "tiktok", account_id="tt-1")
    adapters = {
        "google": fake_adapter("google", CAMPAIGNS, delay=2.0),
        "tiktok": fake_adapter("tiktok", CAMPAIGNS),
    }

    result = await collect_metrics(db, adapter_factory=_factory(adapters), timeout=0.1, metric_date=TODAY)

    assert result["synced_count"] == 1
    assert result["failed_count"] == 1
    assert result["errors"][0]["platform"] == "google"
    assert "Timed out" in result["errors"][0]["error"]


@pytest.mark.anyio
async def test_filters_by_tenant_and_platform(db, make_connection, fake_adapter):
    tenant_a, tenant_b = uuid.uuid4(), uuid.uuid4()
    await make_connection(tenant_a, "tiktok")
    await make_connection(tenant_a, "meta")
    await make_connection(tenant_b, "tiktok")
    adapters = {"tiktok": fake_adapter("tiktok", CAMPAIGNS), "meta": fake_adapter("meta", CAMPAIGNS)}

    result = await collect_metrics(db, tenant_id=tenant_a, platform="tiktok", adapter_factory=_factory(adapters))

    assert result["synced_count"] == 1
    assert result["results"][0]["platform"] == "tiktok"
    assert await _rows(db, tenant_id=tenant_b) == []


@pytest.mark.anyio
async def test_inactive_connections_are_skipped(db, tenant_id, make_connection, fake_adapter):
    await make_connection(tenant_id, "tiktok", is_active=False)

    result = await collect_metrics(db, adapter_factory=_factory({"tiktok": fake_adapter("tiktok", CAMPAIGNS)}))

    assert result["synced_count"] == 0
    assert result["failed_count"] == 0


@pytest.mark.anyio
async def test_unknown_platform_marks_connection_degraded(db, tenant_id, make_connection):
    conn = await make_connection(tenant_id, "snapchat")

    def factory(platform):
        raise ConfigurationError(f"No adapter for platform '{platform}'")

    result = await collect_metrics(db, adapter_factory=factory)

    assert result["failed_count"] == 1
    assert "No adapter" in result["errors"][0]["error"]
    refreshed = await db.get(PlatformConnection, conn.id, populate_existing=True)
    assert refreshed.status == "degraded"

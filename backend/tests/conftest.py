"""
Shared fixtures: a throwaway SQLite database per test (aiosqlite, file-backed so
concurrent sessions see each other's commits) and small row factories.
"""

import asyncio
import uuid
from datetime import date, timedelta
from typing import Optional

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from autopilot.adapters.base import ActionResult, NormalizedCampaignMetric, PlatformAdapter
from autopilot.crypto import encrypt_credentials
from autopilot.database import Base
from autopilot.models import MetricRow, PlatformConnection, Recommendation, Rule
from autopilot.utils import utcnow


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'autopilot.db'}")

    # Let SQLAlchemy own BEGIN so SAVEPOINTs behave like Postgres
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def tenant_id():
    return uuid.uuid4()


# ── Factories ─────────────────────────────────────────────────────────

@pytest.fixture
def make_connection(db):
    async def _make(tenant_id: uuid.UUID, platform: str = "tiktok", account_id: Optional[str] = None, **kwargs):
        conn = PlatformConnection(
            tenant_id=tenant_id,
            platform=platform,
            account_id=account_id or f"acct-{uuid.uuid4().hex[:8]}",
            account_name=kwargs.pop("account_name", None),
            credentials=encrypt_credentials(kwargs.pop("credentials", {"access_token": "test-token"})),
            **kwargs,
        )
        db.add(conn)
        await db.commit()
        return conn
    return _make


@pytest.fixture
def make_metrics(db):
    async def _make(
        tenant_id: uuid.UUID,
        campaign_id: str,
        days: list[dict],
        platform: str = "tiktok",
        reference_date: Optional[date] = None,
        daily_budget: Optional[float] = None,
    ):
        """days[0] is reference_date, days[1] the day before, and so on."""
        reference_date = reference_date or date(2026, 10, 19)
        rows = []
        for offset, values in enumerate(days):
            row = MetricRow(
                tenant_id=tenant_id,
                platform=platform,
                campaign_id=campaign_id,
                campaign_name=f"Campaign {campaign_id}",
                metric_date=reference_date - timedelta(days=offset),
                daily_budget=daily_budget,
                **values,
            )
            db.add(row)
            rows.append(row)
        await db.commit()
        return rows
    return _make


@pytest.fixture
def make_rule(db):
    async def _make(tenant_id: uuid.UUID, conditions: list, rule_type: str = "pause", **kwargs):
        rule = Rule(
            tenant_id=tenant_id,
            rule_name=kwargs.pop("rule_name", f"{rule_type} rule"),
            rule_type=rule_type,
            conditions=conditions,
            actions=kwargs.pop("actions", {}),
            **kwargs,
        )
        db.add(rule)
        await db.commit()
        return rule
    return _make


@pytest.fixture
def make_recommendation(db):
    async def _make(tenant_id: uuid.UUID, status: str = "approved", **kwargs):
        rec = Recommendation(
            tenant_id=tenant_id,
            platform=kwargs.pop("platform", "tiktok"),
            campaign_id=kwargs.pop("campaign_id", "cmp-1"),
            campaign_name=kwargs.pop("campaign_name", "Campaign cmp-1"),
            recommendation_type=kwargs.pop("recommendation_type", "pause"),
            recommended_value=kwargs.pop("recommended_value", 0.0),
            expires_at=kwargs.pop("expires_at", utcnow() + timedelta(hours=48)),
            status=status,
            **kwargs,
        )
        db.add(rec)
        await db.commit()
        return rec
    return _make


# ── Fake adapters ─────────────────────────────────────────────────────

class FakeAdapter(PlatformAdapter):
    """In-memory adapter: canned campaigns, recorded actions, optional failure or delay."""

    def __init__(self, platform: str = "tiktok", campaigns=None, fail_with: Optional[Exception] = None, delay: float = 0.0):
        super().__init__(timeout=5.0)
        self.platform = platform
        self.campaigns = campaigns or []
        self.fail_with = fail_with
        self.delay = delay
        self.actions: list[tuple] = []

    async def _fetch_metrics(self, connection, creds):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            raise self.fail_with
        return [
            c if isinstance(c, NormalizedCampaignMetric) else NormalizedCampaignMetric(**c)
            for c in self.campaigns
        ]

    async def _apply_action(self, connection, creds, campaign_id, action, value):
        self.actions.append((connection.account_id, campaign_id, action, value))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with:
            raise self.fail_with
        request = {"campaign_id": campaign_id, "action": action, "value": value}
        return ActionResult(request=request, response={"ok": True, "campaign_id": campaign_id})


@pytest.fixture
def fake_adapter():
    return FakeAdapter

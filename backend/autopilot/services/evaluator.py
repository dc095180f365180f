"""
Rule Evaluator: Tests every active rule of a tenant against recent daily
metrics and emits Recommendations with an evidence snapshot.

Algorithm:
1. Expire pending/approved recommendations past their expires_at
2. Load active rules (priority desc), validate their conditions/actions
3. Load MetricRows for the widest window any rule needs, grouped by (platform, campaign)
4. For each rule x campaign in scope, average each condition's metric over its
   own lookback window; all conditions must pass, an empty window never passes
5. Size the recommendation (impact, recommended value, confidence), skip it if an
   equivalent one is still pending, otherwise insert it
"""

import asyncio
import logging
import math
import operator
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopilot.adapters.base import today_utc
from autopilot.config import get_settings
from autopilot.errors import ConfigurationError
from autopilot.models import MetricRow, Recommendation, RecommendationStatus, Rule, RuleType
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)

OPERATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "=": lambda a, b: math.isclose(a, b, rel_tol=1e-9, abs_tol=1e-9),
    "!=": lambda a, b: not math.isclose(a, b, rel_tol=1e-9, abs_tol=1e-9),
}

STOP_TYPES = frozenset({RuleType.PAUSE.value, RuleType.KILL.value})
DECREASE_TYPES = frozenset({RuleType.DECREASE_BUDGET.value})


# ── Rule payload schema ───────────────────────────────────────────────

class RuleCondition(BaseModel):
    metric: Literal["spend", "impressions", "clicks", "conversions", "revenue", "cpc", "ctr", "cpm", "cpa", "roas"]
    operator: Literal["<", "<=", ">", ">=", "=", "!="]
    value: float
    lookback_days: int = Field(ge=1, le=90)


class RuleActions(BaseModel):
    model_config = ConfigDict(extra="allow")

    budget_change_percent: Optional[float] = Field(default=None, ge=0, le=1000)
    notify_before_execute: bool = False


@dataclass
class ParsedRule:
    rule: Rule
    conditions: list[RuleCondition]
    actions: RuleActions

    @property
    def max_lookback(self) -> int:
        return max(c.lookback_days for c in self.conditions)


def parse_rule(rule: Rule) -> ParsedRule:
    """Validate a stored rule. Raises ConfigurationError when it cannot be evaluated."""
    if rule.rule_type not in {t.value for t in RuleType}:
        raise ConfigurationError(f"Unknown rule type '{rule.rule_type}'")
    if not isinstance(rule.conditions, list) or not rule.conditions:
        raise ConfigurationError("Rule has no conditions")
    try:
        conditions = [RuleCondition.model_validate(c) for c in rule.conditions]
        actions = RuleActions.model_validate(rule.actions or {})
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise ConfigurationError(f"Invalid rule definition ({location}): {first.get('msg')}") from e
    return ParsedRule(rule=rule, conditions=conditions, actions=actions)


# ── Condition evaluation ──────────────────────────────────────────────

@dataclass
class ConditionResult:
    metric: str
    operator: str
    threshold: float
    lookback_days: int
    average: Optional[float]
    sample_count: int
    window_start: str
    window_end: str
    passed: bool


def window_start_for(reference_date: date, lookback_days: int) -> date:
    """First day of a trailing window that includes reference_date."""
    return reference_date - timedelta(days=lookback_days - 1)


def rows_in_window(rows: list[MetricRow], reference_date: date, lookback_days: int) -> list[MetricRow]:
    start = window_start_for(reference_date, lookback_days)
    return [r for r in rows if start <= r.metric_date <= reference_date]


def evaluate_condition(condition: RuleCondition, rows: list[MetricRow], reference_date: date) -> ConditionResult:
    window = rows_in_window(rows, reference_date, condition.lookback_days)
    values = [float(getattr(r, condition.metric) or 0) for r in window]
    average = round(sum(values) / len(values), 6) if values else None
    passed = average is not None and OPERATORS[condition.operator](average, condition.value)
    return ConditionResult(
        metric=condition.metric,
        operator=condition.operator,
        threshold=condition.value,
        lookback_days=condition.lookback_days,
        average=average,
        sample_count=len(values),
        window_start=window_start_for(reference_date, condition.lookback_days).isoformat(),
        window_end=reference_date.isoformat(),
        passed=passed,
    )


def compute_confidence(sample_count: int) -> float:
    s = get_settings()
    raw = s.confidence_base + s.confidence_per_sample * sample_count
    return float(min(s.confidence_max, max(s.confidence_min, raw)))


def size_recommendation(
    parsed: ParsedRule,
    rows: list[MetricRow],
    reference_date: date,
    results: list[ConditionResult],
) -> dict:
    """Impact, current/recommended value, confidence and evidence for a matched rule."""
    settings = get_settings()
    rule = parsed.rule
    horizon = settings.impact_horizon_days

    widest = rows_in_window(rows, reference_date, parsed.max_lookback)
    avg_daily_spend = sum(float(r.spend or 0) for r in widest) / len(widest) if widest else 0.0

    latest = max(widest, key=lambda r: r.metric_date) if widest else None
    current_value = latest.daily_budget if latest and latest.daily_budget is not None else avg_daily_spend

    pct = parsed.actions.budget_change_percent
    if pct is None:
        pct = settings.default_budget_change_percent

    if rule.rule_type in STOP_TYPES:
        impact = avg_daily_spend * horizon
        recommended_value = 0.0
    else:
        impact = avg_daily_spend * pct / 100 * horizon
        direction = -1 if rule.rule_type in DECREASE_TYPES else 1
        recommended_value = max(0.0, current_value * (1 + direction * pct / 100))

    min_samples = min(r.sample_count for r in results)
    evidence = {
        "rule_id": str(rule.id),
        "rule_name": rule.rule_name,
        "rule_type": rule.rule_type,
        "reference_date": reference_date.isoformat(),
        "conditions": [asdict(r) for r in results],
        "avg_daily_spend": round(avg_daily_spend, 2),
        "impact_horizon_days": horizon,
        "budget_change_percent": None if rule.rule_type in STOP_TYPES else pct,
        "notify_before_execute": parsed.actions.notify_before_execute,
    }
    return {
        "current_value": round(current_value, 2),
        "recommended_value": round(recommended_value, 2),
        "impact_estimate": round(impact, 2),
        "confidence": compute_confidence(min_samples),
        "evidence": evidence,
    }


def describe_match(rule: Rule, results: list[ConditionResult]) -> str:
    parts = [
        f"{r.metric} avg {r.average:g} {r.operator} {r.threshold:g} over {r.lookback_days}d"
        for r in results
    ]
    return f"{rule.rule_name}: " + " and ".join(parts)


# ── Persistence helpers ───────────────────────────────────────────────

async def expire_stale_recommendations(db: AsyncSession, tenant_id: Optional[uuid.UUID] = None) -> int:
    """pending/approved -> expired once expires_at has passed. Returns rows transitioned."""
    now = utcnow()
    stmt = (
        update(Recommendation)
        .where(and_(
            Recommendation.status.in_([RecommendationStatus.PENDING.value, RecommendationStatus.APPROVED.value]),
            Recommendation.expires_at.is_not(None),
            Recommendation.expires_at <= now,
        ))
        .values(status=RecommendationStatus.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if tenant_id is not None:
        stmt = stmt.where(Recommendation.tenant_id == tenant_id)
    result = await db.execute(stmt)
    return result.rowcount or 0


async def _pending_keys(db: AsyncSession, tenant_id: uuid.UUID) -> set[tuple[str, str, str]]:
    result = await db.execute(
        select(Recommendation.platform, Recommendation.campaign_id, Recommendation.recommendation_type)
        .where(and_(
            Recommendation.tenant_id == tenant_id,
            Recommendation.status == RecommendationStatus.PENDING.value,
        ))
    )
    return {tuple(row) for row in result.all()}


async def _load_metrics(db: AsyncSession, tenant_id: uuid.UUID, since: date, until: date) -> dict[tuple[str, str], list[MetricRow]]:
    result = await db.execute(
        select(MetricRow)
        .where(and_(
            MetricRow.tenant_id == tenant_id,
            MetricRow.metric_date >= since,
            MetricRow.metric_date <= until,
        ))
        .order_by(MetricRow.platform, MetricRow.campaign_id, MetricRow.metric_date)
    )
    campaigns: dict[tuple[str, str], list[MetricRow]] = defaultdict(list)
    for row in result.scalars().all():
        campaigns[(row.platform, row.campaign_id)].append(row)
    return campaigns


# ── Entry points ──────────────────────────────────────────────────────

async def evaluate_rules(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    reference_date: Optional[date] = None,
) -> dict:
    """
    Evaluate all active rules of one tenant.

    Returns {total_evaluated, recommendations_created, skipped_duplicates, expired, errors}.
    Zero rules or zero recent metrics is a successful no-op.
    """
    if tenant_id is None:
        raise ValueError("evaluate_rules needs a tenant_id")
    settings = get_settings()
    reference_date = reference_date or today_utc()
    summary = {
        "total_evaluated": 0,
        "recommendations_created": 0,
        "skipped_duplicates": 0,
        "expired": 0,
        "errors": [],
    }

    summary["expired"] = await expire_stale_recommendations(db, tenant_id)

    result = await db.execute(
        select(Rule)
        .where(and_(Rule.tenant_id == tenant_id, Rule.is_active == True))  # noqa: E712
        .order_by(Rule.priority.desc(), Rule.created_at)
    )
    parsed_rules: list[ParsedRule] = []
    for rule in result.scalars().all():
        try:
            parsed_rules.append(parse_rule(rule))
        except ConfigurationError as e:
            logger.warning(f"Evaluator: skipping rule {rule.id} ({rule.rule_name}): {e.message}")
            summary["errors"].append({"rule_id": str(rule.id), "rule_name": rule.rule_name, "error": e.message})

    if not parsed_rules:
        await db.commit()
        logger.info(f"Evaluator: tenant {tenant_id} has no evaluable rules")
        return summary

    window_days = max([settings.evaluator_window_days] + [p.max_lookback for p in parsed_rules])
    campaigns = await _load_metrics(db, tenant_id, window_start_for(reference_date, window_days), reference_date)
    if not campaigns:
        await db.commit()
        logger.info(f"Evaluator: tenant {tenant_id} has no metrics in the last {window_days} days")
        return summary

    seen = await _pending_keys(db, tenant_id)
    expires_at = utcnow() + timedelta(hours=settings.recommendation_ttl_hours)

    for parsed in parsed_rules:
        rule = parsed.rule
        for (platform, campaign_id), rows in campaigns.items():
            if rule.platform and rule.platform != "all" and rule.platform != platform:
                continue
            summary["total_evaluated"] += 1

            results = [evaluate_condition(c, rows, reference_date) for c in parsed.conditions]
            if not all(r.passed for r in results):
                continue

            key = (platform, campaign_id, rule.rule_type)
            if key in seen:
                summary["skipped_duplicates"] += 1
                continue

            sizing = size_recommendation(parsed, rows, reference_date, results)
            rec = Recommendation(
                tenant_id=tenant_id,
                rule_id=rule.id,
                platform=platform,
                campaign_id=campaign_id,
                campaign_name=rows[-1].campaign_name,
                recommendation_type=rule.rule_type,
                reason=describe_match(rule, results),
                expires_at=expires_at,
                status=RecommendationStatus.PENDING.value,
                **sizing,
            )
            try:
                async with db.begin_nested():
                    db.add(rec)
                    await db.flush()
            except IntegrityError:
                # A concurrent run inserted the same pending recommendation first
                logger.info(f"Evaluator: pending {rule.rule_type} for {platform}/{campaign_id} already exists")
                summary["skipped_duplicates"] += 1
            else:
                summary["recommendations_created"] += 1
            seen.add(key)

    await db.commit()
    logger.info(
        f"Evaluator: tenant {tenant_id}: {summary['total_evaluated']} evaluated, "
        f"{summary['recommendations_created']} created, {summary['skipped_duplicates']} duplicates, "
        f"{summary['expired']} expired, {len(summary['errors'])} rule errors"
    )
    return summary


async def evaluate_tenants(
    session_factory: async_sessionmaker,
    tenant_ids: list[uuid.UUID],
    reference_date: Optional[date] = None,
) -> dict:
    """Evaluate several tenants concurrently, one session per tenant."""

    async def _run(tenant_id: uuid.UUID):
        async with session_factory() as db:
            try:
                return tenant_id, await evaluate_rules(db, tenant_id, reference_date), None
            except Exception as e:
                await db.rollback()
                logger.exception(f"Evaluator: tenant {tenant_id} failed")
                return tenant_id, None, str(e) or e.__class__.__name__

    outcomes = await asyncio.gather(*(_run(t) for t in tenant_ids))
    summary = {"tenants": {}, "errors": []}
    for tenant_id, result, error in outcomes:
        if error is None:
            summary["tenants"][str(tenant_id)] = result
        else:
            summary["errors"].append({"tenant_id": str(tenant_id), "error": error})
    return summary


async def active_rule_tenants(db: AsyncSession) -> list[uuid.UUID]:
    """Tenants that own at least one active rule."""
    result = await db.execute(
        select(Rule.tenant_id).where(Rule.is_active == True).distinct()  # noqa: E712
    )
    return list(result.scalars().all())

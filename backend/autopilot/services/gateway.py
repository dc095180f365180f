"""
Execution Gateway: Pushes approved recommendations to the ad platforms.

State machine:
    pending -> approved | rejected          (review_recommendation)
    approved -> executing                   (conditional claim, committed before any platform call)
    executing -> executed | failed          (together with its ExecutionLogEntry, one commit)
    pending/approved -> expired             (past expires_at, never dispatched)

Every transition is a conditional UPDATE on the expected current status, so two
concurrent dispatches of the same recommendation cannot both get past the claim.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopilot.adapters import AdapterFactory, get_adapter
from autopilot.config import get_settings
from autopilot.context import ExecutionContext
from autopilot.errors import (
    AdapterError, AutopilotError, ConfigurationError, NotFoundError,
    RecommendationExpiredError, StateConflictError,
)
from autopilot.models import (
    ExecutionLogEntry, ExecutionStatus, PlatformConnection, Recommendation, RecommendationStatus,
)
from autopilot.utils import utcnow

logger = logging.getLogger(__name__)

# Recommendation type -> adapter action
ACTION_FOR_TYPE = {
    "pause": "pause",
    "kill": "pause",
    "increase_budget": "increase_budget",
    "decrease_budget": "decrease_budget",
    "scale": "scale",
}


@dataclass
class ExecutionOutcome:
    success: bool
    recommendation_id: str
    status: str
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.success:
            data.pop("error")
        else:
            data.pop("result")
        return data


def _json_payload(value: Any) -> Optional[dict]:
    if value is None or isinstance(value, dict):
        return value
    return {"body": value}


# ── Conditional transitions ───────────────────────────────────────────

async def _transition(
    db: AsyncSession,
    recommendation_id: uuid.UUID,
    from_status: str,
    ctx: Optional[ExecutionContext] = None,
    require_unexpired: bool = False,
    **values,
) -> bool:
    """UPDATE ... WHERE id = ? AND status = from_status. True when the row moved."""
    now = utcnow()
    stmt = (
        update(Recommendation)
        .where(and_(Recommendation.id == recommendation_id, Recommendation.status == from_status))
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if require_unexpired:
        stmt = stmt.where(or_(Recommendation.expires_at.is_(None), Recommendation.expires_at > now))
    if ctx is not None and not ctx.is_service:
        stmt = stmt.where(Recommendation.tenant_id.in_(ctx.tenant_ids))
    result = await db.execute(stmt)
    return result.rowcount == 1


async def _raise_not_claimable(
    db: AsyncSession,
    recommendation_id: uuid.UUID,
    ctx: ExecutionContext,
    required_status: str,
    verb: str,
) -> None:
    """Explain why a conditional claim matched nothing. Only side effect: expiring a stale row."""
    rec = await db.get(Recommendation, recommendation_id, populate_existing=True)
    if rec is None:
        raise NotFoundError(f"Recommendation {recommendation_id} not found")
    ctx.authorize(rec.tenant_id)

    if rec.status == required_status and rec.expires_at is not None and rec.expires_at <= utcnow():
        if await _transition(db, rec.id, required_status, status=RecommendationStatus.EXPIRED.value):
            await db.commit()
            logger.info(f"Gateway: recommendation {rec.id} expired at {rec.expires_at.isoformat()}")
        raise RecommendationExpiredError(
            f"Recommendation {recommendation_id} expired at {rec.expires_at.isoformat()} and cannot be {verb}"
        )

    raise StateConflictError(
        f"Recommendation {recommendation_id} is '{rec.status}'; only '{required_status}' recommendations can be {verb}"
    )


async def _find_connection(db: AsyncSession, rec: Recommendation) -> Optional[PlatformConnection]:
    result = await db.execute(
        select(PlatformConnection)
        .where(and_(
            PlatformConnection.tenant_id == rec.tenant_id,
            PlatformConnection.platform == rec.platform,
            PlatformConnection.is_active == True,  # noqa: E712
        ))
        .order_by(PlatformConnection.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _write_attempt(
    db: AsyncSession,
    rec: Recommendation,
    action: str,
    executed_by: str,
    request: Optional[dict],
    response: Any,
    error: Optional[str],
) -> Optional[str]:
    """
    Move executing -> executed|failed and append the matching ExecutionLogEntry in one commit.
    Returns the resulting status, or None when the row had already left 'executing'.
    """
    now = utcnow()
    succeeded = error is None
    if succeeded:
        target = RecommendationStatus.EXECUTED.value
        values = {"executed_at": now, "execution_result": {"request": request, "response": response}, "error_message": None}
    else:
        target = RecommendationStatus.FAILED.value
        values = {"error_message": error}

    moved = await _transition(db, rec.id, RecommendationStatus.EXECUTING.value, status=target, **values)
    entry = ExecutionLogEntry(
        tenant_id=rec.tenant_id,
        recommendation_id=rec.id,
        platform=rec.platform,
        campaign_id=rec.campaign_id,
        action=action,
        request_payload=request,
        executed_by=executed_by,
        created_at=now,
    )
    if moved:
        entry.response_payload = _json_payload(response)
        entry.error_message = error
        entry.status = ExecutionStatus.SUCCESS.value if succeeded else ExecutionStatus.FAILED.value
    else:
        # The reconciler already failed this recommendation; keep the entry failed
        # and carry the platform's late answer under late_result
        late = "success" if succeeded else "failed"
        entry.response_payload = {"late_result": late, "response": response, "error": error}
        entry.error_message = (
            f"Platform answered ({late}) after the recommendation was reconciled as failed; "
            "verify the campaign on the platform"
        )
        entry.status = ExecutionStatus.FAILED.value
    db.add(entry)
    await db.commit()
    return target if moved else None


async def _record_attempt(
    db: AsyncSession,
    rec: Recommendation,
    action: str,
    executed_by: str,
    request: Optional[dict] = None,
    response: Any = None,
    error: Optional[str] = None,
) -> str:
    """
    Record the outcome of a claimed recommendation. A database error on the
    first write is retried once in a fresh transaction.
    Returns the recommendation's resulting status.
    """
    rec_id = rec.id
    try:
        status = await _write_attempt(db, rec, action, executed_by, request, response, error)
    except SQLAlchemyError as e:
        logger.error(f"Gateway: recording attempt for recommendation {rec_id} failed ({e.__class__.__name__}); retrying")
        await db.rollback()
        rec = await db.get(Recommendation, rec_id, populate_existing=True)
        status = await _write_attempt(db, rec, action, executed_by, request, response, error)

    if status is None:
        logger.error(f"Gateway: recommendation {rec_id} left 'executing' during dispatch; needs manual reconciliation")
        raise StateConflictError(
            f"Recommendation {rec_id} was no longer executing when the platform call returned; "
            "the attempt was logged and needs manual reconciliation"
        )
    return status


# ── Entry points ──────────────────────────────────────────────────────

async def execute_recommendation(
    db: AsyncSession,
    recommendation_id: uuid.UUID,
    ctx: ExecutionContext,
    adapter_factory: Optional[AdapterFactory] = None,
    timeout: Optional[float] = None,
) -> ExecutionOutcome:
    """
    Dispatch one approved recommendation to its platform.

    Raises NotFoundError, TenantAccessError, RecommendationExpiredError or
    StateConflictError without side effects (besides expiry) when it cannot be
    claimed, and ConfigurationError when the tenant has no active connection.
    Platform failures do not raise: they come back as a failed outcome.
    """
    adapter_factory = adapter_factory or get_adapter
    timeout = timeout or get_settings().adapter_timeout_seconds

    claimed = await _transition(
        db, recommendation_id, RecommendationStatus.APPROVED.value, ctx=ctx, require_unexpired=True,
        status=RecommendationStatus.EXECUTING.value, execution_started_at=utcnow(),
    )
    await db.commit()
    if not claimed:
        await _raise_not_claimable(db, recommendation_id, ctx, RecommendationStatus.APPROVED.value, "executed")

    rec = await db.get(Recommendation, recommendation_id, populate_existing=True)
    action = ACTION_FOR_TYPE.get(rec.recommendation_type)
    logger.info(f"Gateway: {ctx.actor} claimed recommendation {rec.id} ({rec.recommendation_type} on {rec.platform}/{rec.campaign_id})")

    if action is None:
        error = f"No platform action for recommendation type '{rec.recommendation_type}'"
        await _record_attempt(db, rec, rec.recommendation_type, ctx.actor, error=error)
        raise ConfigurationError(error)

    connection = await _find_connection(db, rec)
    if connection is None:
        error = f"No active {rec.platform} connection for tenant {rec.tenant_id}"
        await _record_attempt(db, rec, action, ctx.actor, error=error)
        raise ConfigurationError(error)

    value = rec.recommended_value if action != "pause" else None
    # No transaction stays open across the platform call
    await db.commit()

    request, response, error = None, None, None
    try:
        adapter = adapter_factory(rec.platform)
        action_result = await asyncio.wait_for(
            adapter.apply_action(connection, rec.campaign_id, action, value), timeout=timeout,
        )
        request, response = action_result.request, action_result.response
    except asyncio.TimeoutError:
        error = f"{rec.platform} did not respond within {timeout:g}s"
    except AdapterError as e:
        request, response, error = e.request, e.response, e.message
    except AutopilotError as e:
        error = e.message
    except Exception as e:
        logger.exception(f"Gateway: unexpected error dispatching recommendation {rec.id}")
        error = f"Unexpected error: {e.__class__.__name__}: {e}"

    status = await _record_attempt(db, rec, action, ctx.actor, request=request, response=response, error=error)
    if error:
        logger.warning(f"Gateway: recommendation {rec.id} failed: {error}")
        return ExecutionOutcome(success=False, recommendation_id=str(rec.id), status=status, error=error)

    logger.info(f"Gateway: recommendation {rec.id} executed ({action}, value={value})")
    return ExecutionOutcome(success=True, recommendation_id=str(rec.id), status=status, result=response)


async def execute_batch(
    session_factory: async_sessionmaker,
    recommendation_ids: list[uuid.UUID],
    ctx: ExecutionContext,
    adapter_factory: Optional[AdapterFactory] = None,
    concurrency: Optional[int] = None,
) -> dict:
    """Dispatch distinct recommendations concurrently, one session each."""
    semaphore = asyncio.Semaphore(max(1, concurrency or get_settings().gateway_concurrency))
    unique_ids = list(dict.fromkeys(recommendation_ids))

    async def _run(recommendation_id: uuid.UUID) -> dict:
        async with semaphore:
            async with session_factory() as db:
                try:
                    outcome = await execute_recommendation(db, recommendation_id, ctx, adapter_factory=adapter_factory)
                    return outcome.to_dict()
                except AutopilotError as e:
                    await db.rollback()
                    return {
                        "success": False,
                        "recommendation_id": str(recommendation_id),
                        "error": e.message,
                        "code": e.code,
                    }
                except Exception as e:
                    logger.exception(f"Gateway: batch dispatch of recommendation {recommendation_id} failed")
                    await db.rollback()
                    return {
                        "success": False,
                        "recommendation_id": str(recommendation_id),
                        "error": f"Unexpected error: {e.__class__.__name__}",
                        "code": "internal_error",
                    }

    outcomes = await asyncio.gather(*(_run(rid) for rid in unique_ids))
    return {
        "outcomes": list(outcomes),
        "executed": sum(1 for o in outcomes if o["success"]),
        "failed": sum(1 for o in outcomes if not o["success"]),
    }


async def reconcile_stale_executions(db: AsyncSession, stale_after: Optional[timedelta] = None) -> dict:
    """
    Fail recommendations stuck in 'executing' longer than stale_after.
    The platform may or may not have applied the change, so each gets a failed
    log entry asking for manual verification. Never re-dispatches.
    """
    stale_after = stale_after or timedelta(minutes=get_settings().executing_stale_minutes)
    cutoff = utcnow() - stale_after
    result = await db.execute(
        select(Recommendation).where(and_(
            Recommendation.status == RecommendationStatus.EXECUTING.value,
            or_(Recommendation.execution_started_at.is_(None), Recommendation.execution_started_at < cutoff),
        ))
    )
    stale = list(result.scalars().all())

    reconciled = []
    for rec in stale:
        error = (
            f"Execution did not complete within {int(stale_after.total_seconds() // 60)} minutes; "
            "verify the campaign on the platform and reconcile manually"
        )
        moved = await _transition(
            db, rec.id, RecommendationStatus.EXECUTING.value,
            status=RecommendationStatus.FAILED.value, error_message=error,
        )
        if not moved:
            continue
        db.add(ExecutionLogEntry(
            tenant_id=rec.tenant_id,
            recommendation_id=rec.id,
            platform=rec.platform,
            campaign_id=rec.campaign_id,
            action=ACTION_FOR_TYPE.get(rec.recommendation_type, rec.recommendation_type),
            error_message=error,
            status=ExecutionStatus.FAILED.value,
            executed_by="system:reconciler",
        ))
        reconciled.append(str(rec.id))
        logger.warning(f"Gateway: recommendation {rec.id} stuck in executing since {rec.execution_started_at}; marked failed")

    await db.commit()
    return {"reconciled": len(reconciled), "recommendation_ids": reconciled}


async def review_recommendation(
    db: AsyncSession,
    recommendation_id: uuid.UUID,
    ctx: ExecutionContext,
    approve: bool,
    note: Optional[str] = None,
) -> Recommendation:
    """pending -> approved | rejected, stamped with the reviewer."""
    now = utcnow()
    target = RecommendationStatus.APPROVED.value if approve else RecommendationStatus.REJECTED.value
    moved = await _transition(
        db, recommendation_id, RecommendationStatus.PENDING.value, ctx=ctx, require_unexpired=True,
        status=target, approved_by=ctx.actor, approved_at=now, review_note=note,
    )
    await db.commit()
    if not moved:
        await _raise_not_claimable(db, recommendation_id, ctx, RecommendationStatus.PENDING.value, "reviewed")

    logger.info(f"Gateway: {ctx.actor} {target} recommendation {recommendation_id}")
    return await db.get(Recommendation, recommendation_id, populate_existing=True)

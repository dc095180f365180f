"""
Recommendations Router: Review queue and execution trigger.
Recommendations are created by the rule evaluator; humans approve or reject
them here, and approved ones are pushed to the platform via the gateway.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopilot.auth import require_context
from autopilot.context import ExecutionContext
from autopilot.database import get_db, get_session_factory
from autopilot.errors import NotFoundError
from autopilot.models import ExecutionLogEntry, Recommendation
from autopilot.services.gateway import execute_batch, execute_recommendation, review_recommendation
from autopilot.utils import parse_uuid

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class ReviewRequest(BaseModel):
    action: Literal["approve", "reject"]
    note: Optional[str] = None


class BatchExecuteRequest(BaseModel):
    recommendation_ids: list[str] = Field(min_length=1, max_length=100)


# ── Helpers ───────────────────────────────────────────────────────────

def _iso(value):
    return value.isoformat() if value else None


def _serialize_recommendation(r: Recommendation) -> dict:
    return {
        "id": str(r.id),
        "tenant_id": str(r.tenant_id),
        "rule_id": str(r.rule_id) if r.rule_id else None,
        "platform": r.platform,
        "campaign_id": r.campaign_id,
        "campaign_name": r.campaign_name,
        "recommendation_type": r.recommendation_type,
        "reason": r.reason,
        "evidence": r.evidence,
        "current_value": r.current_value,
        "recommended_value": r.recommended_value,
        "impact_estimate": r.impact_estimate,
        "confidence": r.confidence,
        "status": r.status,
        "expires_at": _iso(r.expires_at),
        "approved_by": r.approved_by,
        "approved_at": _iso(r.approved_at),
        "review_note": r.review_note,
        "execution_started_at": _iso(r.execution_started_at),
        "executed_at": _iso(r.executed_at),
        "execution_result": r.execution_result,
        "error_message": r.error_message,
        "created_at": _iso(r.created_at),
    }


def _serialize_log(entry: ExecutionLogEntry) -> dict:
    return {
        "id": str(entry.id),
        "recommendation_id": str(entry.recommendation_id),
        "platform": entry.platform,
        "campaign_id": entry.campaign_id,
        "action": entry.action,
        "status": entry.status,
        "request_payload": entry.request_payload,
        "response_payload": entry.response_payload,
        "error_message": entry.error_message,
        "executed_by": entry.executed_by,
        "created_at": _iso(entry.created_at),
    }


async def _get_recommendation(db: AsyncSession, rec_id: str, ctx: ExecutionContext) -> Recommendation:
    rec = await db.get(Recommendation, parse_uuid(rec_id, "recommendation_id"))
    if rec is None:
        raise NotFoundError(f"Recommendation {rec_id} not found")
    ctx.authorize(rec.tenant_id)
    return rec


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("")
async def list_recommendations(
    tenant_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    platform: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    ctx: ExecutionContext = Depends(require_context),
    db: AsyncSession = Depends(get_db),
):
    """List recommendations, newest first. Tenant callers only see their own tenants."""
    query = select(Recommendation).order_by(Recommendation.created_at.desc()).limit(limit)

    if tenant_id:
        tid = parse_uuid(tenant_id, "tenant_id")
        ctx.authorize(tid)
        query = query.where(Recommendation.tenant_id == tid)
    elif not ctx.is_service:
        query = query.where(Recommendation.tenant_id.in_(ctx.tenant_ids))
    if status:
        query = query.where(Recommendation.status == status)
    if platform:
        query = query.where(Recommendation.platform == platform)

    result = await db.execute(query)
    return [_serialize_recommendation(r) for r in result.scalars().all()]


@router.get("/{rec_id}")
async def get_recommendation(
    rec_id: str,
    ctx: ExecutionContext = Depends(require_context),
    db: AsyncSession = Depends(get_db),
):
    return _serialize_recommendation(await _get_recommendation(db, rec_id, ctx))


@router.get("/{rec_id}/executions")
async def list_executions(
    rec_id: str,
    ctx: ExecutionContext = Depends(require_context),
    db: AsyncSession = Depends(get_db),
):
    """Execution log for one recommendation, oldest first."""
    rec = await _get_recommendation(db, rec_id, ctx)
    result = await db.execute(
        select(ExecutionLogEntry)
        .where(ExecutionLogEntry.recommendation_id == rec.id)
        .order_by(ExecutionLogEntry.created_at)
    )
    return [_serialize_log(e) for e in result.scalars().all()]


@router.post("/{rec_id}/review")
async def review(
    rec_id: str,
    body: ReviewRequest,
    ctx: ExecutionContext = Depends(require_context),
    db: AsyncSession = Depends(get_db),
):
    """Approve or reject a pending recommendation."""
    rec = await review_recommendation(
        db, parse_uuid(rec_id, "recommendation_id"), ctx, approve=body.action == "approve", note=body.note,
    )
    return _serialize_recommendation(rec)


@router.post("/{rec_id}/execute")
async def execute(
    rec_id: str,
    ctx: ExecutionContext = Depends(require_context),
    db: AsyncSession = Depends(get_db),
):
    """
    Push an approved recommendation to its platform.
    Platform failures return 200 with success=false; the recommendation is marked failed.
    """
    outcome = await execute_recommendation(db, parse_uuid(rec_id, "recommendation_id"), ctx)
    return outcome.to_dict()


@router.post("/execute")
async def execute_many(
    body: BatchExecuteRequest,
    ctx: ExecutionContext = Depends(require_context),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Push several approved recommendations concurrently; per-item outcomes."""
    ids = [parse_uuid(r, "recommendation_ids") for r in body.recommendation_ids]
    return await execute_batch(session_factory, ids, ctx)

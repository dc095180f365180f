"""
Pipeline Router: On-demand collector and evaluator runs.
"""

import logging
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from autopilot.adapters import ADAPTERS
from autopilot.auth import require_context
from autopilot.context import ExecutionContext
from autopilot.database import get_db
from autopilot.services.collector import collect_metrics
from autopilot.services.evaluator import evaluate_rules
from autopilot.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncRequest(BaseModel):
    tenant_id: Optional[str] = None
    platform: Optional[str] = None


class EvaluateRequest(BaseModel):
    tenant_id: Optional[str] = None
    reference_date: Optional[date] = None


def _resolve_tenant(tenant_id: Optional[str], ctx: ExecutionContext) -> Optional[uuid.UUID]:
    """Tenant callers must name one of their tenants unless they only have one."""
    if tenant_id:
        tid = parse_uuid(tenant_id, "tenant_id")
        ctx.authorize(tid)
        return tid
    if ctx.is_service:
        return None
    if len(ctx.tenant_ids) == 1:
        return next(iter(ctx.tenant_ids))
    raise HTTPException(status_code=400, detail="tenant_id is required for multi-tenant tokens.")


@router.post("/collector/sync")
async def sync_metrics(
    body: SyncRequest,
    ctx: ExecutionContext = Depends(require_context),
    db: AsyncSession = Depends(get_db),
):
    """Sync today's metrics for every active connection, optionally one tenant / platform."""
    if body.platform and body.platform not in ADAPTERS:
        raise HTTPException(status_code=400, detail=f"Unknown platform '{body.platform}'. Use: {list(ADAPTERS)}")
    tenant_id = _resolve_tenant(body.tenant_id, ctx)
    logger.info(f"Collector triggered by {ctx.actor} (tenant={tenant_id}, platform={body.platform})")
    return await collect_metrics(db, tenant_id=tenant_id, platform=body.platform)


@router.post("/evaluator/run")
async def run_evaluator(
    body: EvaluateRequest,
    ctx: ExecutionContext = Depends(require_context),
    db: AsyncSession = Depends(get_db),
):
    """Evaluate one tenant's active rules against recent metrics."""
    tenant_id = _resolve_tenant(body.tenant_id, ctx)
    if tenant_id is None:
        raise HTTPException(status_code=400, detail="tenant_id is required: the evaluator runs one tenant at a time.")
    logger.info(f"Evaluator triggered by {ctx.actor} for tenant {tenant_id}")
    return await evaluate_rules(db, tenant_id, reference_date=body.reference_date)

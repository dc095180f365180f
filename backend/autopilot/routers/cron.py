"""
Cron / Scheduled Jobs: Endpoints for Upstash QStash or external cron.

These endpoints are called on a schedule. They verify CRON_SECRET and run the
pipeline stages for every tenant under the service context.

Callers send either:
  X-Cron-Secret: <CRON_SECRET>
  OR Authorization: Bearer <CRON_SECRET>

Suggested schedule: sync hourly, evaluate after each sync, reconcile every 15 minutes.
"""

import logging
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopilot.config import get_settings
from autopilot.database import get_db, get_session_factory
from autopilot.services.collector import collect_metrics
from autopilot.services.evaluator import active_rule_tenants, evaluate_tenants
from autopilot.services.gateway import reconcile_stale_executions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


async def _require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    authorization: str | None = Header(None),
) -> None:
    """Verify request came from the scheduler with a valid secret."""
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(500, "CRON_SECRET not configured")
    # Accept X-Cron-Secret header or Bearer token
    token = x_cron_secret
    if not token and authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    if token != secret:
        raise HTTPException(401, "Invalid cron secret")


@router.post("/sync")
async def cron_sync(
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    """
    Scheduled metrics sync for all tenants:
    POST https://your-app/api/cron/sync
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    try:
        result = await collect_metrics(db)
        logger.info(f"Cron sync completed: {result['synced_count']} synced, {result['failed_count']} failed")
        return {"status": "ok", "result": result}
    except Exception as e:
        logger.exception("Cron sync failed")
        raise HTTPException(500, str(e))


@router.post("/evaluate")
async def cron_evaluate(
    _: None = Depends(_require_cron_secret),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Scheduled rule evaluation for every tenant with an active rule."""
    try:
        async with session_factory() as db:
            tenant_ids = await active_rule_tenants(db)
        result = await evaluate_tenants(session_factory, tenant_ids)
        logger.info(f"Cron evaluate completed for {len(tenant_ids)} tenants, {len(result['errors'])} errors")
        return {"status": "ok", "result": result}
    except Exception as e:
        logger.exception("Cron evaluate failed")
        raise HTTPException(500, str(e))


@router.post("/reconcile")
async def cron_reconcile(
    _: None = Depends(_require_cron_secret),
    db: AsyncSession = Depends(get_db),
):
    """Fail recommendations stuck in 'executing' past EXECUTING_STALE_MINUTES."""
    try:
        result = await reconcile_stale_executions(db)
        if result["reconciled"]:
            logger.warning(f"Cron reconcile: {result['reconciled']} stale executions marked failed")
        return {"status": "ok", "result": result}
    except Exception as e:
        logger.exception("Cron reconcile failed")
        raise HTTPException(500, str(e))

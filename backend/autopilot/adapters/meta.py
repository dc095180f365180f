"""
Meta (Facebook/Instagram) Marketing API adapter, Graph v21.0.
Campaign budgets are expressed in minor currency units (cents).
"""

import logging
from typing import Optional

from autopilot.adapters.base import (
    ActionResult, NormalizedCampaignMetric, PlatformAdapter, describe_request,
)
from autopilot.errors import AdapterError
from autopilot.models import PlatformConnection
from autopilot.utils import safe_float

logger = logging.getLogger(__name__)

BASE_URL = "https://graph.facebook.com/v21.0"

# Action types counted as a conversion, in order of preference
PURCHASE_ACTION_TYPES = ("purchase", "omni_purchase", "offsite_conversion.fb_pixel_purchase")

MINOR_UNITS = 100

PAGE_LIMIT = 100
MAX_PAGES = 50


def _action_total(entries: Optional[list]) -> Optional[float]:
    by_type = {e.get("action_type"): e.get("value") for e in entries or [] if isinstance(e, dict)}
    for action_type in PURCHASE_ACTION_TYPES:
        if action_type in by_type:
            return safe_float(by_type[action_type])
    return None


class MetaAdapter(PlatformAdapter):
    platform = "meta"

    async def _list_campaigns(self, connection: PlatformConnection, token: str) -> list[dict]:
        """Follow the cursor paging of /campaigns until `paging.next` disappears."""
        params = {
            "fields": "id,name,status,daily_budget,lifetime_budget,objective",
            "access_token": token,
            "limit": PAGE_LIMIT,
        }
        campaigns: list[dict] = []
        for _ in range(MAX_PAGES):
            body = await self._request("GET", f"{BASE_URL}/act_{connection.account_id}/campaigns", params=params)
            if not isinstance(body, dict):
                break
            campaigns.extend(body.get("data") or [])
            paging = body.get("paging") or {}
            after = (paging.get("cursors") or {}).get("after")
            if not paging.get("next") or not after:
                return campaigns
            params = {**params, "after": after}
        else:
            logger.warning(f"Meta account {connection.account_id}: stopped after {MAX_PAGES} campaign pages")
        return campaigns

    async def _fetch_metrics(self, connection: PlatformConnection, creds: dict) -> list[NormalizedCampaignMetric]:
        token = creds.get("access_token", "")
        campaigns = await self._list_campaigns(connection, token)

        results = []
        for c in campaigns:
            insights = {}
            try:
                insights_body = await self._request("GET", f"{BASE_URL}/{c['id']}/insights", params={
                    "fields": "spend,impressions,clicks,actions,action_values,cpc,ctr,cpm",
                    "date_preset": "today",
                    "access_token": token,
                })
                insights = (insights_body.get("data") or [{}])[0] if isinstance(insights_body, dict) else {}
            except AdapterError as e:
                # One campaign's insights failing leaves that campaign with empty metrics
                logger.warning(f"Meta insights failed for campaign {c.get('id')}: {e}")

            results.append(NormalizedCampaignMetric(
                campaign_id=str(c.get("id")),
                campaign_name=c.get("name"),
                status=c.get("status"),
                daily_budget=safe_float(c["daily_budget"]) / MINOR_UNITS if c.get("daily_budget") else None,
                metrics={
                    "spend": insights.get("spend"),
                    "impressions": insights.get("impressions"),
                    "clicks": insights.get("clicks"),
                    "conversions": _action_total(insights.get("actions")),
                    "revenue": _action_total(insights.get("action_values")),
                    "cpc": insights.get("cpc"),
                    "ctr": insights.get("ctr"),
                    "cpm": insights.get("cpm"),
                },
                raw=insights,
            ))
        return results

    async def _apply_action(
        self, connection: PlatformConnection, creds: dict, campaign_id: str, action: str, value: Optional[float],
    ) -> ActionResult:
        url = f"{BASE_URL}/{campaign_id}"
        if action in ("pause", "resume"):
            payload = {"status": "PAUSED" if action == "pause" else "ACTIVE"}
        else:
            payload = {"daily_budget": int(round(value * MINOR_UNITS))}

        body = await self._request("POST", url, data={**payload, "access_token": creds.get("access_token", "")})
        request = describe_request("POST", url, body=payload)
        if not isinstance(body, dict) or body.get("success") is False or "error" in body:
            raise AdapterError("Meta rejected the campaign update", request=request, response=body)
        return ActionResult(request=request, response=body)

"""
Google Ads REST adapter (v18).
Money fields are micros (1/1,000,000 of the account currency); CTR is a fraction.
Budgets live on a separate CampaignBudget resource referenced by the campaign.
"""

import logging
from typing import Optional

from autopilot.adapters.base import (
    ActionResult, NormalizedCampaignMetric, PlatformAdapter, describe_request, today_utc,
)
from autopilot.errors import AdapterError
from autopilot.models import PlatformConnection
from autopilot.utils import safe_float

logger = logging.getLogger(__name__)

BASE_URL = "https://googleads.googleapis.com/v18"

MICROS = 1_000_000


def _from_micros(value) -> Optional[float]:
    if value is None or value == "":
        return None
    return safe_float(value) / MICROS


class GoogleAdsAdapter(PlatformAdapter):
    platform = "google"

    @staticmethod
    def _customer_id(connection: PlatformConnection) -> str:
        return str(connection.account_id).replace("-", "")

    @staticmethod
    def _headers(creds: dict) -> dict:
        headers = {
            "Authorization": f"Bearer {creds.get('access_token', '')}",
            "developer-token": creds.get("developer_token", ""),
            "Content-Type": "application/json",
        }
        if creds.get("login_customer_id"):
            headers["login-customer-id"] = str(creds["login_customer_id"]).replace("-", "")
        return headers

    async def _search(self, customer_id: str, creds: dict, query: str) -> list[dict]:
        body = await self._request(
            "POST",
            f"{BASE_URL}/customers/{customer_id}/googleAds:searchStream",
            json={"query": query},
            headers=self._headers(creds),
        )
        if isinstance(body, dict):
            body = [body]
        rows = []
        for batch in body or []:
            rows.extend((batch or {}).get("results") or [])
        return rows

    async def _fetch_metrics(self, connection: PlatformConnection, creds: dict) -> list[NormalizedCampaignMetric]:
        query = f"""
            SELECT campaign.id, campaign.name, campaign.status, campaign_budget.amount_micros,
                   metrics.cost_micros, metrics.impressions, metrics.clicks, metrics.conversions,
                   metrics.conversions_value, metrics.average_cpc, metrics.ctr
            FROM campaign
            WHERE segments.date = '{today_utc().isoformat()}'
        """
        rows = await self._search(self._customer_id(connection), creds, query)

        results = []
        for row in rows:
            campaign = row.get("campaign") or {}
            metrics = row.get("metrics") or {}
            ctr = metrics.get("ctr")
            results.append(NormalizedCampaignMetric(
                campaign_id=str(campaign.get("id")),
                campaign_name=campaign.get("name"),
                status=campaign.get("status"),
                daily_budget=_from_micros((row.get("campaignBudget") or {}).get("amountMicros")),
                metrics={
                    "spend": _from_micros(metrics.get("costMicros")),
                    "impressions": metrics.get("impressions"),
                    "clicks": metrics.get("clicks"),
                    "conversions": metrics.get("conversions"),
                    "revenue": metrics.get("conversionsValue"),
                    "cpc": _from_micros(metrics.get("averageCpc")),
                    "ctr": safe_float(ctr) * 100 if ctr is not None else None,
                },
                raw=metrics,
            ))
        return results

    async def _apply_action(
        self, connection: PlatformConnection, creds: dict, campaign_id: str, action: str, value: Optional[float],
    ) -> ActionResult:
        customer_id = self._customer_id(connection)
        if action in ("pause", "resume"):
            url = f"{BASE_URL}/customers/{customer_id}/campaigns:mutate"
            payload = {"operations": [{
                "update": {
                    "resourceName": f"customers/{customer_id}/campaigns/{campaign_id}",
                    "status": "PAUSED" if action == "pause" else "ENABLED",
                },
                "updateMask": "status",
            }]}
        else:
            if not str(campaign_id).isdigit():
                raise AdapterError(f"Google Ads campaign id must be numeric, got {campaign_id!r}")
            rows = await self._search(
                customer_id, creds,
                f"SELECT campaign.campaign_budget FROM campaign WHERE campaign.id = {int(campaign_id)}",
            )
            budget_resource = ((rows[0].get("campaign") or {}).get("campaignBudget")) if rows else None
            if not budget_resource:
                raise AdapterError(f"Google Ads campaign {campaign_id} has no budget resource")
            url = f"{BASE_URL}/customers/{customer_id}/campaignBudgets:mutate"
            payload = {"operations": [{
                "update": {
                    "resourceName": budget_resource,
                    "amountMicros": str(int(round(value * MICROS))),
                },
                "updateMask": "amount_micros",
            }]}

        body = await self._request("POST", url, json=payload, headers=self._headers(creds))
        request = describe_request("POST", url, body=payload)
        if not isinstance(body, dict) or not body.get("results"):
            raise AdapterError("Google Ads mutate returned no results", request=request, response=body)
        return ActionResult(request=request, response=body)

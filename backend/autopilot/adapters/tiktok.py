"""
TikTok Business API adapter (open_api v1.3).
Budgets are in major currency units. Every response carries a `code`
envelope; anything other than 0 is an error even on HTTP 200.
"""

import logging
from typing import Any, Optional

from autopilot.adapters.base import (
    ActionResult, NormalizedCampaignMetric, PlatformAdapter, describe_request, today_utc,
)
from autopilot.errors import AdapterError
from autopilot.models import PlatformConnection
from autopilot.utils import safe_float, safe_int

logger = logging.getLogger(__name__)

BASE_URL = "https://business-api.tiktok.com/open_api/v1.3"

REPORT_METRICS = ["spend", "impressions", "clicks", "conversion", "cpc", "ctr", "cpm", "total_purchase_value"]

PAGE_SIZE = 100
MAX_PAGES = 50


class TikTokAdapter(PlatformAdapter):
    platform = "tiktok"

    @staticmethod
    def _headers(creds: dict) -> dict:
        return {"Access-Token": creds.get("access_token", ""), "Content-Type": "application/json"}

    def _check_envelope(self, body: Any, request: dict) -> dict:
        if not isinstance(body, dict):
            raise AdapterError("tiktok returned a malformed response", request=request, response=body)
        if body.get("code", 0) != 0:
            raise AdapterError(
                f"TikTok API error [{body.get('code')}]: {body.get('message')}",
                request=request,
                response=body,
            )
        return body

    async def _post(self, path: str, creds: dict, payload: dict) -> tuple[dict, dict]:
        url = f"{BASE_URL}/{path}"
        body = await self._request("POST", url, json=payload, headers=self._headers(creds))
        request = describe_request("POST", url, body=payload)
        return self._check_envelope(body, request), request

    async def _post_all_pages(self, path: str, creds: dict, payload: dict) -> list[dict]:
        """Collect `data.list` across pages until `page_info.total_page` is reached."""
        rows: list[dict] = []
        for page in range(1, MAX_PAGES + 1):
            body, _ = await self._post(path, creds, {**payload, "page": page, "page_size": PAGE_SIZE})
            data = body.get("data") or {}
            rows.extend(data.get("list") or [])
            total_page = safe_int((data.get("page_info") or {}).get("total_page"), default=1)
            if page >= total_page:
                return rows
        logger.warning(f"TikTok {path}: stopped after {MAX_PAGES} pages for advertiser {payload.get('advertiser_id')}")
        return rows

    async def _fetch_metrics(self, connection: PlatformConnection, creds: dict) -> list[NormalizedCampaignMetric]:
        campaigns = await self._post_all_pages("campaign/get/", creds, {"advertiser_id": connection.account_id})

        today = today_utc().isoformat()
        report_map: dict[str, dict] = {}
        try:
            report_rows = await self._post_all_pages("report/integrated/get/", creds, {
                "advertiser_id": connection.account_id,
                "report_type": "BASIC",
                "dimensions": ["campaign_id"],
                "data_level": "AUCTION_CAMPAIGN",
                "start_date": today,
                "end_date": today,
                "metrics": REPORT_METRICS,
            })
            for row in report_rows:
                cid = (row.get("dimensions") or {}).get("campaign_id")
                if cid:
                    report_map[str(cid)] = row.get("metrics") or {}
        except AdapterError as e:
            # Campaign list is still useful without today's report
            logger.warning(f"TikTok report fetch failed for {connection.account_id}: {e}")

        results = []
        for c in campaigns:
            cid = str(c.get("campaign_id"))
            raw = report_map.get(cid, {})
            results.append(NormalizedCampaignMetric(
                campaign_id=cid,
                campaign_name=c.get("campaign_name"),
                status=c.get("operation_status"),
                daily_budget=safe_float(c.get("budget")) if c.get("budget") is not None else None,
                metrics={
                    "spend": raw.get("spend"),
                    "impressions": raw.get("impressions"),
                    "clicks": raw.get("clicks"),
                    "conversions": raw.get("conversion"),
                    "revenue": raw.get("total_purchase_value"),
                    "cpc": raw.get("cpc"),
                    "ctr": raw.get("ctr"),
                    "cpm": raw.get("cpm"),
                },
                raw=raw,
            ))
        return results

    async def _apply_action(
        self, connection: PlatformConnection, creds: dict, campaign_id: str, action: str, value: Optional[float],
    ) -> ActionResult:
        if action in ("pause", "resume"):
            path = "campaign/status/update/"
            payload = {
                "advertiser_id": connection.account_id,
                "campaign_ids": [campaign_id],
                "operation_status": "DISABLE" if action == "pause" else "ENABLE",
            }
        else:
            path = "campaign/update/"
            payload = {
                "advertiser_id": connection.account_id,
                "campaign_id": campaign_id,
                "budget": round(value, 2),
            }
        body, request = await self._post(path, creds, payload)
        return ActionResult(request=request, response=body)

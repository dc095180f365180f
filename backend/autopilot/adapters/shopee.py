"""
Shopee Open Platform adapter (v2 ads endpoints).
Authentication is query-string based; calls are signed with HMAC-SHA256 over
partner_id + path + timestamp + access_token + shop_id when a partner_key is present.
Errors come back as HTTP 200 with a non-empty `error` field.
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Optional

from autopilot.adapters.base import (
    ActionResult, NormalizedCampaignMetric, PlatformAdapter, describe_request,
)
from autopilot.errors import AdapterError
from autopilot.models import PlatformConnection
from autopilot.utils import safe_float

logger = logging.getLogger(__name__)

HOST = "https://partner.shopeemobile.com"
API_PREFIX = "/api/v2"


def sign_request(partner_key: str, partner_id: str, path: str, timestamp: int, access_token: str, shop_id: str) -> str:
    base = f"{partner_id}{path}{timestamp}{access_token}{shop_id}"
    return hmac.new(partner_key.encode(), base.encode(), hashlib.sha256).hexdigest()


class ShopeeAdapter(PlatformAdapter):
    platform = "shopee"

    def _auth_params(self, creds: dict, path: str) -> dict:
        timestamp = int(time.time())
        params = {
            "partner_id": creds.get("partner_id", ""),
            "shop_id": creds.get("shop_id", ""),
            "timestamp": timestamp,
            "access_token": creds.get("access_token", ""),
        }
        if creds.get("partner_key"):
            params["sign"] = sign_request(
                creds["partner_key"], str(params["partner_id"]), path, timestamp,
                params["access_token"], str(params["shop_id"]),
            )
        return params

    @staticmethod
    def _check_envelope(body: Any, request: dict) -> dict:
        if not isinstance(body, dict):
            raise AdapterError("shopee returned a malformed response", request=request, response=body)
        if body.get("error"):
            raise AdapterError(
                f"Shopee API error [{body.get('error')}]: {body.get('message')}",
                request=request,
                response=body,
            )
        return body

    async def _fetch_metrics(self, connection: PlatformConnection, creds: dict) -> list[NormalizedCampaignMetric]:
        path = f"{API_PREFIX}/ads/get_all_ads"
        params = self._auth_params(creds, path)
        body = await self._request("GET", f"{HOST}{path}", params=params)
        body = self._check_envelope(body, describe_request("GET", f"{HOST}{path}", params))

        results = []
        for ad in (body.get("response") or {}).get("ads") or []:
            cid = ad.get("campaign_id") or ad.get("ads_id")
            results.append(NormalizedCampaignMetric(
                campaign_id=str(cid),
                campaign_name=ad.get("title") or f"Shopee Ad {ad.get('ads_id')}",
                status=ad.get("status"),
                daily_budget=safe_float(ad["daily_budget"]) if ad.get("daily_budget") is not None else None,
                metrics={
                    "spend": ad.get("cost"),
                    "impressions": ad.get("impressions"),
                    "clicks": ad.get("clicks"),
                    "conversions": ad.get("conversions"),
                    "revenue": ad.get("broad_gmv"),
                },
                raw=ad,
            ))
        return results

    async def _apply_action(
        self, connection: PlatformConnection, creds: dict, campaign_id: str, action: str, value: Optional[float],
    ) -> ActionResult:
        path = f"{API_PREFIX}/ads/edit_manual_product_ads"
        if action in ("pause", "resume"):
            payload = {"campaign_id": campaign_id, "edit_action": action}
        else:
            payload = {"campaign_id": campaign_id, "edit_action": "change_budget", "budget": round(value, 2)}

        params = self._auth_params(creds, path)
        body = await self._request("POST", f"{HOST}{path}", params=params, json=payload)
        request = describe_request("POST", f"{HOST}{path}", params, payload)
        return ActionResult(request=request, response=self._check_envelope(body, request))

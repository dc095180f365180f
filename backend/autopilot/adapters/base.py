"""
Platform adapter interface.

Every advertising platform exposes the same two capabilities to the pipeline:
list today's campaign metrics, and apply a campaign action. Each subclass owns
the translation to its platform's endpoints, payload shapes and money units.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional

import httpx

from autopilot.config import get_settings
from autopilot.errors import AdapterError
from autopilot.models import PlatformConnection
from autopilot.utils import ratio, safe_float

logger = logging.getLogger(__name__)

ACTIONS = ("pause", "resume", "increase_budget", "decrease_budget", "scale")
BUDGET_ACTIONS = frozenset({"increase_budget", "decrease_budget", "scale"})

METRIC_KEYS = ("spend", "impressions", "clicks", "conversions", "revenue", "cpc", "ctr", "cpm")

# Never written to the execution log
_REDACTED_KEYS = frozenset({"access_token", "sign", "developer-token", "Access-Token", "Authorization"})


@dataclass
class NormalizedCampaignMetric:
    campaign_id: str
    campaign_name: Optional[str]
    status: Optional[str]
    daily_budget: Optional[float]
    metrics: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionResult:
    request: dict
    response: Any


def redact(payload: Optional[dict]) -> Optional[dict]:
    if payload is None:
        return None
    return {k: ("***" if k in _REDACTED_KEYS else v) for k, v in payload.items()}


def describe_request(method: str, url: str, params: Optional[dict] = None, body: Any = None) -> dict:
    """The outbound request as recorded in execution logs, credentials redacted."""
    return {
        "method": method,
        "url": url,
        "params": redact(params),
        "body": redact(body) if isinstance(body, dict) else body,
    }


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def derive_metrics(metrics: dict[str, Any]) -> dict[str, float]:
    """
    Fill the canonical metric set. Missing counters are 0; ratios the platform
    did not report are computed from the counters.
    """
    m = metrics or {}
    spend = safe_float(m.get("spend"))
    impressions = safe_float(m.get("impressions"))
    clicks = safe_float(m.get("clicks"))
    conversions = safe_float(m.get("conversions"))
    revenue = safe_float(m.get("revenue"))

    def reported_or(key: str, computed: float) -> float:
        value = m.get(key)
        return safe_float(value) if value not in (None, "") else computed

    return {
        "spend": spend,
        "impressions": impressions,
        "clicks": clicks,
        "conversions": conversions,
        "revenue": revenue,
        "cpc": reported_or("cpc", ratio(spend, clicks)),
        "ctr": reported_or("ctr", ratio(clicks, impressions, 100)),
        "cpm": reported_or("cpm", ratio(spend, impressions, 1000)),
        "cpa": ratio(spend, conversions),
        "roas": ratio(revenue, spend),
    }


class PlatformAdapter(ABC):
    platform: str = ""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self._http_client = http_client
        self.timeout = timeout if timeout is not None else get_settings().adapter_timeout_seconds

    # ── Public capability surface ────────────────────────────────────

    async def fetch_metrics(self, connection: PlatformConnection) -> list[NormalizedCampaignMetric]:
        """List current-day campaign metrics for the connection's account."""
        campaigns = await self._fetch_metrics(connection, connection.credential_bundle)
        logger.info(f"{self.platform}: fetched {len(campaigns)} campaigns for account {connection.account_id}")
        return campaigns

    async def apply_action(
        self,
        connection: PlatformConnection,
        campaign_id: str,
        action: str,
        value: Optional[float] = None,
    ) -> ActionResult:
        """Apply pause/resume/budget change to one campaign."""
        if action not in ACTIONS:
            raise AdapterError(f"Unsupported action '{action}'")
        if action in BUDGET_ACTIONS and (value is None or value < 0):
            raise AdapterError(f"Action '{action}' requires a non-negative budget value")
        logger.info(f"{self.platform}: applying {action} to campaign {campaign_id} (value={value})")
        return await self._apply_action(connection, connection.credential_bundle, campaign_id, action, value)

    # ── Platform specifics ───────────────────────────────────────────

    @abstractmethod
    async def _fetch_metrics(self, connection: PlatformConnection, creds: dict) -> list[NormalizedCampaignMetric]:
        ...

    @abstractmethod
    async def _apply_action(
        self, connection: PlatformConnection, creds: dict, campaign_id: str, action: str, value: Optional[float],
    ) -> ActionResult:
        ...

    # ── HTTP helpers ─────────────────────────────────────────────────

    @asynccontextmanager
    async def _client(self):
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Send one request and return the decoded JSON body, raising AdapterError on any failure."""
        request_log = describe_request(method, url, params, json if json is not None else data)
        try:
            async with self._client() as client:
                response = await client.request(
                    method, url, params=params, json=json, data=data, headers=headers, timeout=self.timeout,
                )
        except httpx.TimeoutException as e:
            raise AdapterError(f"{self.platform} request timed out: {url}", request=request_log) from e
        except httpx.HTTPError as e:
            raise AdapterError(f"{self.platform} request failed: {e}", request=request_log) from e

        if response.status_code < 200 or response.status_code >= 300:
            raise AdapterError(
                f"{self.platform} API error [{response.status_code}]: {response.text[:500]}",
                request=request_log,
                response=response.text,
                http_status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise AdapterError(
                f"{self.platform} returned a malformed response",
                request=request_log,
                response=response.text,
                http_status=response.status_code,
            ) from e

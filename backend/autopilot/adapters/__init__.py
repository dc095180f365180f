"""
Platform adapters: selected once per connection by platform name.
"""

from typing import Callable, Optional

import httpx

from autopilot.adapters.base import (
    ACTIONS, ActionResult, NormalizedCampaignMetric, PlatformAdapter, derive_metrics,
)
from autopilot.adapters.google import GoogleAdsAdapter
from autopilot.adapters.meta import MetaAdapter
from autopilot.adapters.shopee import ShopeeAdapter
from autopilot.adapters.tiktok import TikTokAdapter
from autopilot.errors import ConfigurationError

ADAPTERS: dict[str, type[PlatformAdapter]] = {
    "tiktok": TikTokAdapter,
    "meta": MetaAdapter,
    "google": GoogleAdsAdapter,
    "shopee": ShopeeAdapter,
}

AdapterFactory = Callable[[str], PlatformAdapter]


def get_adapter(
    platform: str,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[float] = None,
) -> PlatformAdapter:
    adapter_cls = ADAPTERS.get((platform or "").lower())
    if adapter_cls is None:
        raise ConfigurationError(f"No adapter for platform '{platform}'")
    return adapter_cls(http_client=http_client, timeout=timeout)


__all__ = [
    "ACTIONS", "ADAPTERS", "ActionResult", "AdapterFactory", "NormalizedCampaignMetric",
    "PlatformAdapter", "derive_metrics", "get_adapter",
]

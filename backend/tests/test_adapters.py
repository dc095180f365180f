"""
Platform adapter tests against mocked HTTP (httpx.MockTransport): payload
shapes, money units, error envelopes and credential redaction.
"""

import hashlib
import hmac
import json
from urllib.parse import parse_qs

import httpx
import pytest

from autopilot.adapters import get_adapter
from autopilot.adapters.base import derive_metrics, redact
from autopilot.adapters.shopee import sign_request
from autopilot.crypto import encrypt_credentials
from autopilot.errors import AdapterError, ConfigurationError
from autopilot.models import PlatformConnection


def _connection(platform: str, account_id: str, **creds) -> PlatformConnection:
    return PlatformConnection(
        platform=platform,
        account_id=account_id,
        credentials=encrypt_credentials(creds or {"access_token": "secret-token"}),
    )


def _client(handler, sent: list) -> httpx.AsyncClient:
    def _record(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return handler(request)
    return httpx.AsyncClient(transport=httpx.MockTransport(_record))


def _json(request: httpx.Request) -> dict:
    return json.loads(request.content)


# ── TikTok ────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_tiktok_fetch_joins_campaigns_with_report():
    def handler(request):
        if request.url.path.endswith("/campaign/get/"):
            return httpx.Response(200, json={"code": 0, "data": {"list": [
                {"campaign_id": 111, "campaign_name": "Prospecting", "operation_status": "ENABLE", "budget": 500.0},
                {"campaign_id": 222, "campaign_name": "No report", "operation_status": "DISABLE"},
            ]}})
        return httpx.Response(200, json={"code": 0, "data": {"list": [
            {"dimensions": {"campaign_id": "111"},
             "metrics": {"spend": "300", "impressions": "1000", "clicks": "10", "conversion": "2", "total_purchase_value": "600"}},
        ]}})

    sent = []
    async with _client(handler, sent) as client:
        adapter = get_adapter("tiktok", http_client=client)
        campaigns = await adapter.fetch_metrics(_connection("tiktok", "adv-1"))

    assert [c.campaign_id for c in campaigns] == ["111", "222"]
    assert campaigns[0].daily_budget == 500.0
    assert campaigns[0].metrics["revenue"] == "600"
    assert campaigns[1].daily_budget is None
    assert sent[0].headers["Access-Token"] == "secret-token"
    assert _json(sent[0])["advertiser_id"] == "adv-1"


@pytest.mark.anyio
async def test_tiktok_nonzero_code_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"code": 40105, "message": "Access token is invalid"})

    async with _client(handler, []) as client:
        adapter = get_adapter("tiktok", http_client=client)
        with pytest.raises(AdapterError) as exc:
            await adapter.apply_action(_connection("tiktok", "adv-1"), "111", "pause")

    assert "40105" in exc.value.message
    assert exc.value.response["code"] == 40105


@pytest.mark.anyio
async def test_tiktok_pause_and_budget_payloads():
    sent = []
    async with _client(lambda r: httpx.Response(200, json={"code": 0, "data": {}}), sent) as client:
        adapter = get_adapter("tiktok", http_client=client)
        conn = _connection("tiktok", "adv-1")
        paused = await adapter.apply_action(conn, "111", "pause")
        await adapter.apply_action(conn, "111", "increase_budget", 123.456)

    assert sent[0].url.path.endswith("/campaign/status/update/")
    assert _json(sent[0]) == {"advertiser_id": "adv-1", "campaign_ids": ["111"], "operation_status": "DISABLE"}
    assert sent[1].url.path.endswith("/campaign/update/")
    assert _json(sent[1])["budget"] == 123.46
    assert paused.request["method"] == "POST"
    assert "secret-token" not in json.dumps(paused.request)


@pytest.mark.anyio
async def test_tiktok_follows_page_info():
    def handler(request):
        body = _json(request)
        if request.url.path.endswith("/campaign/get/"):
            page = body["page"]
            return httpx.Response(200, json={"code": 0, "data": {
                "list": [{"campaign_id": f"{page}01", "campaign_name": f"Page {page}"}],
                "page_info": {"page": page, "page_size": 100, "total_page": 3},
            }})
        return httpx.Response(200, json={"code": 0, "data": {"list": [], "page_info": {"total_page": 1}}})

    sent = []
    async with _client(handler, sent) as client:
        adapter = get_adapter("tiktok", http_client=client)
        campaigns = await adapter.fetch_metrics(_connection("tiktok", "adv-1"))

    assert [c.campaign_id for c in campaigns] == ["101", "201", "301"]
    campaign_pages = [_json(r)["page"] for r in sent if r.url.path.endswith("/campaign/get/")]
    assert campaign_pages == [1, 2, 3]


# ── Meta ──────────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_meta_budgets_are_in_cents():
    def handler(request):
        if request.url.path.endswith("/campaigns"):
            return httpx.Response(200, json={"data": [
                {"id": "900", "name": "Meta campaign", "status": "ACTIVE", "daily_budget": "15000"},
            ]})
        return httpx.Response(200, json={"data": [{
            "spend": "120.50", "impressions": "5000", "clicks": "80",
            "actions": [{"action_type": "link_click", "value": "80"}, {"action_type": "purchase", "value": "4"}],
            "action_values": [{"action_type": "purchase", "value": "300"}],
        }]})

    sent = []
    async with _client(handler, sent) as client:
        adapter = get_adapter("meta", http_client=client)
        [campaign] = await adapter.fetch_metrics(_connection("meta", "555"))

    assert sent[0].url.path == "/v21.0/act_555/campaigns"
    assert campaign.daily_budget == 150.0
    assert campaign.metrics["conversions"] == 4.0
    assert campaign.metrics["revenue"] == 300.0


@pytest.mark.anyio
async def test_meta_budget_update_sends_minor_units():
    sent = []
    async with _client(lambda r: httpx.Response(200, json={"success": True}), sent) as client:
        adapter = get_adapter("meta", http_client=client)
        result = await adapter.apply_action(_connection("meta", "555"), "900", "decrease_budget", 120.0)

    form = parse_qs(sent[0].content.decode())
    assert form["daily_budget"] == ["12000"]
    assert result.request["body"] == {"daily_budget": 12000}


@pytest.mark.anyio
async def test_meta_unsuccessful_update_raises():
    async with _client(lambda r: httpx.Response(200, json={"success": False}), []) as client:
        adapter = get_adapter("meta", http_client=client)
        with pytest.raises(AdapterError):
            await adapter.apply_action(_connection("meta", "555"), "900", "pause")


@pytest.mark.anyio
async def test_meta_follows_campaign_cursor():
    def handler(request):
        if request.url.path.endswith("/campaigns"):
            if request.url.params.get("after") == "c2":
                return httpx.Response(200, json={"data": [{"id": "902", "name": "Second"}], "paging": {"cursors": {"after": "c3"}}})
            return httpx.Response(200, json={
                "data": [{"id": "901", "name": "First"}],
                "paging": {"cursors": {"after": "c2"}, "next": "https://graph.facebook.com/v21.0/act_555/campaigns?after=c2"},
            })
        return httpx.Response(200, json={"data": []})

    sent = []
    async with _client(handler, sent) as client:
        adapter = get_adapter("meta", http_client=client)
        campaigns = await adapter.fetch_metrics(_connection("meta", "555"))

    assert [c.campaign_id for c in campaigns] == ["901", "902"]
    listing = [r for r in sent if r.url.path.endswith("/campaigns")]
    assert len(listing) == 2
    assert "after" not in listing[0].url.params


# ── Google Ads ────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_google_converts_micros_and_fraction_ctr():
    def handler(request):
        return httpx.Response(200, json=[{"results": [{
            "campaign": {"id": "42", "name": "Search", "status": "ENABLED"},
            "campaignBudget": {"amountMicros": "25000000"},
            "metrics": {"costMicros": "12500000", "impressions": "400", "clicks": "20",
                        "averageCpc": "625000", "ctr": 0.05, "conversions": 2, "conversionsValue": 50},
        }]}])

    sent = []
    async with _client(handler, sent) as client:
        adapter = get_adapter("google", http_client=client)
        [campaign] = await adapter.fetch_metrics(
            _connection("google", "123-456-7890", access_token="t", developer_token="dev"),
        )

    assert sent[0].url.path == "/v18/customers/1234567890/googleAds:searchStream"
    assert sent[0].headers["developer-token"] == "dev"
    assert campaign.daily_budget == 25.0
    assert campaign.metrics["spend"] == 12.5
    assert campaign.metrics["cpc"] == 0.625
    assert campaign.metrics["ctr"] == pytest.approx(5.0)


@pytest.mark.anyio
async def test_google_budget_change_looks_up_budget_resource():
    def handler(request):
        if request.url.path.endswith(":searchStream"):
            return httpx.Response(200, json=[{"results": [
                {"campaign": {"campaignBudget": "customers/1234567890/campaignBudgets/77"}},
            ]}])
        return httpx.Response(200, json={"results": [{"resourceName": "customers/1234567890/campaignBudgets/77"}]})

    sent = []
    async with _client(handler, sent) as client:
        adapter = get_adapter("google", http_client=client)
        await adapter.apply_action(_connection("google", "123-456-7890"), "42", "scale", 30.0)

    mutate = _json(sent[1])["operations"][0]
    assert sent[1].url.path.endswith("/campaignBudgets:mutate")
    assert mutate["update"] == {"resourceName": "customers/1234567890/campaignBudgets/77", "amountMicros": "30000000"}


@pytest.mark.anyio
async def test_google_budget_change_requires_numeric_id():
    async with _client(lambda r: httpx.Response(200, json=[]), []) as client:
        adapter = get_adapter("google", http_client=client)
        with pytest.raises(AdapterError, match="numeric"):
            await adapter.apply_action(_connection("google", "1"), "abc", "increase_budget", 10.0)


# ── Shopee ────────────────────────────────────────────────────────────

def test_shopee_signature():
    expected = hmac.new(b"key", b"1001/api/v2/ads/get_all_ads1700000000tok2002", hashlib.sha256).hexdigest()
    assert sign_request("key", "1001", "/api/v2/ads/get_all_ads", 1700000000, "tok", "2002") == expected


@pytest.mark.anyio
async def test_shopee_fetch_signs_and_maps_fields():
    def handler(request):
        return httpx.Response(200, json={"error": "", "response": {"ads": [
            {"campaign_id": 31, "title": "Sneakers", "cost": 12.0, "broad_gmv": 48.0, "clicks": 6, "daily_budget": 20},
        ]}})

    sent = []
    creds = {"access_token": "tok", "partner_id": "1001", "shop_id": "2002", "partner_key": "key"}
    async with _client(handler, sent) as client:
        adapter = get_adapter("shopee", http_client=client)
        [campaign] = await adapter.fetch_metrics(_connection("shopee", "2002", **creds))

    params = sent[0].url.params
    assert params["partner_id"] == "1001"
    assert params["sign"] == sign_request("key", "1001", "/api/v2/ads/get_all_ads", int(params["timestamp"]), "tok", "2002")
    assert campaign.campaign_id == "31"
    assert campaign.campaign_name == "Sneakers"
    assert campaign.metrics["spend"] == 12.0
    assert campaign.metrics["revenue"] == 48.0


@pytest.mark.anyio
async def test_shopee_error_envelope_raises_and_redacts():
    def handler(request):
        return httpx.Response(200, json={"error": "error_auth", "message": "Invalid access_token"})

    async with _client(handler, []) as client:
        adapter = get_adapter("shopee", http_client=client)
        with pytest.raises(AdapterError) as exc:
            await adapter.apply_action(_connection("shopee", "2002", access_token="tok", partner_key="key"), "31", "pause")

    assert "error_auth" in exc.value.message
    assert exc.value.request["params"]["access_token"] == "***"
    assert exc.value.request["params"]["sign"] == "***"


# ── Shared behavior ───────────────────────────────────────────────────

@pytest.mark.anyio
async def test_non_2xx_becomes_adapter_error():
    async with _client(lambda r: httpx.Response(503, text="upstream unavailable"), []) as client:
        adapter = get_adapter("meta", http_client=client)
        with pytest.raises(AdapterError) as exc:
            await adapter.apply_action(_connection("meta", "555"), "900", "pause")

    assert exc.value.http_status == 503
    assert "503" in exc.value.message
    assert exc.value.request["body"]["access_token"] == "***"


@pytest.mark.anyio
async def test_network_failure_becomes_adapter_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler, []) as client:
        adapter = get_adapter("tiktok", http_client=client)
        with pytest.raises(AdapterError, match="request failed"):
            await adapter.fetch_metrics(_connection("tiktok", "adv-1"))


@pytest.mark.anyio
async def test_budget_actions_require_a_value():
    adapter = get_adapter("tiktok")
    with pytest.raises(AdapterError):
        await adapter.apply_action(_connection("tiktok", "adv-1"), "111", "increase_budget", None)
    with pytest.raises(AdapterError):
        await adapter.apply_action(_connection("tiktok", "adv-1"), "111", "delete")


def test_unknown_platform_has_no_adapter():
    with pytest.raises(ConfigurationError):
        get_adapter("myspace")


def test_redact_masks_credentials_only():
    assert redact({"access_token": "x", "campaign_id": "1"}) == {"access_token": "***", "campaign_id": "1"}
    assert redact(None) is None


def test_derive_metrics_fills_ratios():
    derived = derive_metrics({"spend": 100, "impressions": 2000, "clicks": 40, "conversions": 4, "revenue": 250})
    assert derived["cpc"] == 2.5
    assert derived["ctr"] == 2.0
    assert derived["cpm"] == 50.0
    assert derived["cpa"] == 25.0
    assert derived["roas"] == 2.5
    # Reported ratios win over computed ones
    assert derive_metrics({"spend": 100, "clicks": 40, "cpc": "3.1"})["cpc"] == 3.1

import json
from pathlib import Path

import httpx
import pytest
import respx

from fuelcheck.config import Environment, ProviderConfig
from fuelcheck.models import ApiKey, OAuthToken, ProviderId, SourceKind
from fuelcheck.provider import copilot, warp, zai
from fuelcheck.provider.base import FetchContext


class TestZaiQuotaUrl:
    def test_global_default(self, environment: "Environment") -> "None":
        assert zai.quota_url(ProviderConfig(id=ProviderId.ZAI), environment) == f"{zai.GLOBAL_HOST}{zai.QUOTA_PATH}"

    def test_china_region(self, environment: "Environment") -> "None":
        config = ProviderConfig(id=ProviderId.ZAI, region="bigmodel-cn")
        assert zai.quota_url(config, environment) == f"{zai.CHINA_HOST}{zai.QUOTA_PATH}"

    def test_host_override(self, tmp_path: "Path") -> "None":
        env = Environment(variables={"Z_AI_API_HOST": "zai.internal"}, home=tmp_path)
        assert zai.quota_url(ProviderConfig(id=ProviderId.ZAI), env) == f"https://zai.internal{zai.QUOTA_PATH}"

    def test_url_override_wins(self, tmp_path: "Path") -> "None":
        env = Environment(
            variables={"Z_AI_QUOTA_URL": "https://quota.example.com/q", "Z_AI_API_HOST": "ignored"},
            home=tmp_path,
        )
        assert zai.quota_url(ProviderConfig(id=ProviderId.ZAI), env) == "https://quota.example.com/q"


class TestApiFetchers:
    @pytest.mark.asyncio
    @respx.mock
    async def test_zai_bearer_key(self, environment: "Environment") -> "None":
        route = respx.get(f"{zai.GLOBAL_HOST}{zai.QUOTA_PATH}").mock(
            return_value=httpx.Response(200, json={"success": True, "data": {"limits": []}})
        )
        credential = ApiKey(source=SourceKind.API, key="zai-key-0123456789")

        async with httpx.AsyncClient() as client:
            context = FetchContext(ProviderConfig(id=ProviderId.ZAI), environment, client)
            raw = await zai.fetch_api(credential, context)

        assert route.calls.last.request.headers["Authorization"] == "Bearer zai-key-0123456789"
        assert raw.provider is ProviderId.ZAI
        assert raw.payload["success"] is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_copilot_token_header(self, environment: "Environment") -> "None":
        route = respx.get(copilot.COPILOT_USER_URL).mock(
            return_value=httpx.Response(200, json={"copilot_plan": "individual"})
        )
        credential = OAuthToken(source=SourceKind.API, token="gho_0123456789")

        async with httpx.AsyncClient() as client:
            context = FetchContext(ProviderConfig(id=ProviderId.COPILOT), environment, client)
            await copilot.fetch_api(credential, context)

        headers = route.calls.last.request.headers
        assert headers["Authorization"] == "token gho_0123456789"
        assert headers["editor-version"] == copilot.COPILOT_HEADERS["editor-version"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_warp_posts_graphql_query(self, environment: "Environment") -> "None":
        route = respx.post(warp.GRAPHQL_URL).mock(
            return_value=httpx.Response(200, json={"data": {"user": None}})
        )
        credential = ApiKey(source=SourceKind.API, key="warp-key-0123456789")

        async with httpx.AsyncClient() as client:
            context = FetchContext(ProviderConfig(id=ProviderId.WARP), environment, client)
            raw = await warp.fetch_api(credential, context)

        body = json.loads(route.calls.last.request.content)
        assert body["operationName"] == "GetRequestLimitInfo"
        assert "requestLimitInfo" in body["query"]
        assert raw.payload == {"data": {"user": None}}

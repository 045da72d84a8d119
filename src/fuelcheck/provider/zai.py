from fuelcheck.config import Environment, ProviderConfig
from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, bearer, raw_response, request_json, secret_of

QUOTA_PATH = "/api/monitor/usage/quota/limit"
GLOBAL_HOST = "https://api.z.ai"
CHINA_HOST = "https://open.bigmodel.cn"


def quota_url(provider_config: "ProviderConfig", environment: "Environment") -> "str":
    """
    picks the quota endpoint: an explicit URL override, then a host
    override, then the configured region (mainland China deployments
    live on bigmodel.cn).
    """
    url = environment.get(["Z_AI_QUOTA_URL"])
    if url:
        return url

    host = environment.get(["Z_AI_API_HOST"])
    if host:
        if "://" not in host:
            host = f"https://{host}"
        return f"{host.rstrip('/')}{QUOTA_PATH}"

    region = (provider_config.region or "").lower()
    if "cn" in region or "bigmodel" in region:
        return f"{CHINA_HOST}{QUOTA_PATH}"
    return f"{GLOBAL_HOST}{QUOTA_PATH}"


async def fetch_api(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    payload = await request_json(
        context,
        ProviderId.ZAI,
        "GET",
        quota_url(context.provider_config, context.environment),
        headers=bearer(secret_of(ProviderId.ZAI, credential)),
    )
    return raw_response(ProviderId.ZAI, credential, payload)

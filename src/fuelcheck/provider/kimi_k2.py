from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, bearer, raw_response, request_json, secret_of

CREDITS_URL = "https://kimi-k2.ai/api/user/credits"


async def fetch_api(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    payload = await request_json(
        context,
        ProviderId.KIMI_K2,
        "GET",
        CREDITS_URL,
        headers=bearer(secret_of(ProviderId.KIMI_K2, credential)),
    )
    return raw_response(ProviderId.KIMI_K2, credential, payload)

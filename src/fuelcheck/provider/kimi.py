from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, bearer, raw_response, request_json, secret_of

USAGES_URL = "https://www.kimi.com/apiv2/kimi.gateway.billing.v1.BillingService/GetUsages"


async def fetch_api(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    payload = await request_json(
        context,
        ProviderId.KIMI,
        "POST",
        USAGES_URL,
        headers=bearer(secret_of(ProviderId.KIMI, credential)),
    )
    return raw_response(ProviderId.KIMI, credential, payload)

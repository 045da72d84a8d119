from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, bearer, raw_response, request_json, secret_of

GRAPHQL_URL = "https://app.warp.dev/graphql/v2?op=GetRequestLimitInfo"

REQUEST_LIMIT_QUERY = (
    "query GetRequestLimitInfo($requestContext: RequestContext!) { "
    "user(requestContext: $requestContext) { __typename ... on UserOutput { "
    "user { requestLimitInfo { isUnlimited nextRefreshTime requestLimit "
    "requestsUsedSinceLastRefresh } } } } }"
)


def request_body() -> "dict[str, object]":
    return {
        "query": REQUEST_LIMIT_QUERY,
        "variables": {
            "requestContext": {
                "clientContext": {},
                "osContext": {"category": "macOS", "name": "macOS", "version": "0.0.0"},
            }
        },
        "operationName": "GetRequestLimitInfo",
    }


async def fetch_api(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    headers = bearer(secret_of(ProviderId.WARP, credential))
    headers.update(
        {
            "Content-Type": "application/json",
            "x-warp-client-id": "warp-app",
            "x-warp-os-category": "macOS",
            "x-warp-os-name": "macOS",
            "x-warp-os-version": "0.0.0",
        }
    )

    payload = await request_json(
        context, ProviderId.WARP, "POST", GRAPHQL_URL, headers=headers, body=request_body()
    )
    return raw_response(ProviderId.WARP, credential, payload)

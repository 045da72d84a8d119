from fuelcheck.config import Environment
from fuelcheck.models import ApiKey, CookieHeader, ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import USER_AGENT, FetchContext, raw_response, request_json, secret_of

FACTORY_BASE_URL = "https://app.factory.ai"


def base_url(environment: "Environment") -> "str":
    return (environment.get(["FACTORY_BASE_URL"]) or FACTORY_BASE_URL).rstrip("/")


def access_token(cookie_header: "str") -> "str | None":
    """
    returns the `access-token` cookie the Factory web app sets, if any.
    """
    for part in cookie_header.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name.strip() == "access-token" and value.strip():
            return value.strip()
    return None


def _headers(credential: "ResolvedCredential", environment: "Environment") -> "dict[str, str]":
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "Origin": FACTORY_BASE_URL,
        "Referer": f"{FACTORY_BASE_URL}/",
        "x-factory-client": "web-app",
        "User-Agent": USER_AGENT,
    }
    secret = secret_of(ProviderId.FACTORY, credential)
    token = None
    if isinstance(credential, CookieHeader):
        headers["Cookie"] = secret
        token = environment.get(["FACTORY_BEARER_TOKEN"]) or access_token(secret)
    elif isinstance(credential, ApiKey):
        token = secret
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


async def fetch_usage(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    """
    reads the organization behind the session, then its subscription
    token usage. Serves both the web (cookie) and api (bearer) sources.
    """
    headers = _headers(credential, context.environment)
    base = base_url(context.environment)

    auth = await request_json(
        context, ProviderId.FACTORY, "GET", f"{base}/api/app/auth/me", headers=headers
    )
    usage = await request_json(
        context,
        ProviderId.FACTORY,
        "POST",
        f"{base}/api/organization/subscription/usage",
        headers=headers,
        body={"useCache": True},
    )
    return raw_response(ProviderId.FACTORY, credential, {"auth": auth, "usage": usage})

from fuelcheck.config import Environment, ProviderConfig
from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import (
    USER_AGENT,
    FetchContext,
    bearer,
    raw_response,
    request_json,
    secret_of,
)

API_REMAINS_URL = "https://api.minimax.io/v1/coding_plan/remains"
WEB_REMAINS_PATH = "/v1/api/openplatform/coding_plan/remains"


def api_url(environment: "Environment") -> "str":
    return environment.get(["MINIMAX_REMAINS_URL"]) or API_REMAINS_URL


def web_url(provider_config: "ProviderConfig", environment: "Environment") -> "str":
    url = environment.get(["MINIMAX_REMAINS_URL"])
    if url:
        return url

    host = environment.get(["MINIMAX_HOST"])
    if host:
        if "://" not in host:
            host = f"https://{host}"
    elif "cn" in (provider_config.region or "").lower():
        host = "https://platform.minimaxi.com"
    else:
        host = "https://platform.minimax.io"
    return f"{host.rstrip('/')}{WEB_REMAINS_PATH}"


def cookie_token(header: "str") -> "str | None":
    """
    returns the session JWT carried in a MiniMax cookie header, if any.
    """
    for part in header.split(";"):
        name, sep, value = part.partition("=")
        if not sep:
            continue
        if name.strip().lower() in ("_token", "token", "access_token") and value.strip():
            return value.strip()
    return None


async def fetch_api(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    payload = await request_json(
        context,
        ProviderId.MINIMAX,
        "GET",
        api_url(context.environment),
        headers=bearer(secret_of(ProviderId.MINIMAX, credential)),
    )
    return raw_response(ProviderId.MINIMAX, credential, payload)


async def fetch_web(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    cookie = secret_of(ProviderId.MINIMAX, credential)
    headers = {"Cookie": cookie, "Accept": "application/json", "User-Agent": USER_AGENT}
    token = cookie_token(cookie)
    if token:
        headers["Authorization"] = f"Bearer {token}"

    payload = await request_json(
        context,
        ProviderId.MINIMAX,
        "GET",
        web_url(context.provider_config, context.environment),
        headers=headers,
    )
    return raw_response(ProviderId.MINIMAX, credential, payload)

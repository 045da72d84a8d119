from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import USER_AGENT, FetchContext, raw_response, request_text, secret_of

SETTINGS_URL = "https://ampcode.com/settings"


async def fetch_web(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    """
    Amp has no usage API; the free tier balance is embedded in the
    settings page the web app renders.
    """
    html = await request_text(
        context,
        ProviderId.AMP,
        "GET",
        SETTINGS_URL,
        headers={
            "Cookie": secret_of(ProviderId.AMP, credential),
            "Accept": "text/html",
            "User-Agent": USER_AGENT,
        },
    )
    return raw_response(ProviderId.AMP, credential, {"html": html})

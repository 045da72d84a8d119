import structlog

from fuelcheck.errors import FuelcheckError
from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import USER_AGENT, FetchContext, raw_response, request_json, secret_of

logger = structlog.get_logger()

CURSOR_BASE_URL = "https://cursor.com/api"


async def fetch_web(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    headers = {
        "Cookie": secret_of(ProviderId.CURSOR, credential),
        "Accept": "application/json",
        "User-Agent": USER_AGENT,
    }

    summary = await request_json(
        context, ProviderId.CURSOR, "GET", f"{CURSOR_BASE_URL}/usage-summary", headers=headers
    )

    user = None
    try:
        user = await request_json(
            context, ProviderId.CURSOR, "GET", f"{CURSOR_BASE_URL}/auth/me", headers=headers
        )
    except FuelcheckError as exc:
        # the account email is decoration, the summary is the answer
        logger.debug("cursor_user_unavailable", kind=str(exc.kind))

    return raw_response(ProviderId.CURSOR, credential, {"summary": summary, "user": user})

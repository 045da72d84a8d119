from typing import Any

import structlog

from fuelcheck.errors import FetchError, FetchErrorKind, FuelcheckError
from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import (
    USER_AGENT,
    FetchContext,
    bearer,
    raw_response,
    request_json,
    secret_of,
)

logger = structlog.get_logger()

OAUTH_USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
WEB_BASE_URL = "https://claude.ai/api"


async def fetch_oauth(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    headers = bearer(secret_of(ProviderId.CLAUDE, credential))
    headers["anthropic-beta"] = "oauth-2025-04-20"

    payload = await request_json(context, ProviderId.CLAUDE, "GET", OAUTH_USAGE_URL, headers=headers)
    return raw_response(ProviderId.CLAUDE, credential, payload)


async def fetch_web(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    """
    fetches usage through the claude.ai web session: the organization
    list first, then the usage and (best effort) overage endpoints of
    the chat organization.
    """
    headers = {
        "Cookie": secret_of(ProviderId.CLAUDE, credential),
        "Accept": "application/json",
        "User-Agent": USER_AGENT,
    }

    orgs = await request_json(
        context, ProviderId.CLAUDE, "GET", f"{WEB_BASE_URL}/organizations", headers=headers
    )
    org = select_organization(orgs)
    if org is None:
        raise FetchError(FetchErrorKind.REMOTE_UNAVAILABLE, "claude: no organization on this account")

    org_url = f"{WEB_BASE_URL}/organizations/{org['uuid']}"
    usage = await request_json(context, ProviderId.CLAUDE, "GET", f"{org_url}/usage", headers=headers)

    overage = None
    try:
        overage = await request_json(
            context, ProviderId.CLAUDE, "GET", f"{org_url}/overage_spend_limit", headers=headers
        )
    except FuelcheckError as exc:
        # overage is optional; usage alone is a complete answer
        logger.debug("claude_overage_unavailable", kind=str(exc.kind))

    payload = {"organization": org, "usage": usage, "overage": overage}
    return raw_response(ProviderId.CLAUDE, credential, payload)


def select_organization(orgs: "Any") -> "dict[str, Any] | None":
    """
    prefers an organization with the chat capability, then any that
    is not API-only, then the first one.
    """
    if not isinstance(orgs, list):
        return None
    candidates = [org for org in orgs if isinstance(org, dict) and org.get("uuid")]

    def capabilities(org: "dict[str, Any]") -> "list[str]":
        return [str(cap).lower() for cap in org.get("capabilities") or []]

    for org in candidates:
        if "chat" in capabilities(org):
            return org
    for org in candidates:
        caps = capabilities(org)
        if not caps or any(cap != "api" for cap in caps):
            return org
    return candidates[0] if candidates else None

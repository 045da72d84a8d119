from typing import Any

import structlog

from fuelcheck.errors import FuelcheckError
from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, bearer, raw_response, request_json, secret_of

logger = structlog.get_logger()

CODE_ASSIST_URL = "https://cloudcode-pa.googleapis.com/v1internal:loadCodeAssist"
QUOTA_URL = "https://cloudcode-pa.googleapis.com/v1internal:retrieveUserQuota"


async def fetch_api(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    """
    asks Code Assist for the account tier and companion project, then
    retrieves the per-model quota buckets for that project.
    """
    headers = bearer(secret_of(ProviderId.GEMINI, credential))
    headers["Content-Type"] = "application/json"

    tier = None
    project = None
    try:
        assist = await request_json(
            context,
            ProviderId.GEMINI,
            "POST",
            CODE_ASSIST_URL,
            headers=headers,
            body={"metadata": {"ideType": "GEMINI_CLI", "pluginType": "GEMINI"}},
        )
        tier, project = _tier_and_project(assist)
    except FuelcheckError as exc:
        logger.debug("gemini_code_assist_unavailable", kind=str(exc.kind))

    body = {"project": project} if project else {}
    quota = await request_json(context, ProviderId.GEMINI, "POST", QUOTA_URL, headers=headers, body=body)
    return raw_response(ProviderId.GEMINI, credential, {"quota": quota, "tier": tier})


def _tier_and_project(assist: "Any") -> "tuple[str | None, str | None]":
    if not isinstance(assist, dict):
        return None, None
    current = assist.get("currentTier")
    tier = current.get("id") if isinstance(current, dict) else None
    project = assist.get("cloudaicompanionProject")
    if isinstance(project, dict):
        project = project.get("id") or project.get("projectId")
    return (
        tier if isinstance(tier, str) else None,
        project if isinstance(project, str) else None,
    )

import asyncio
import tomllib
from pathlib import Path

import structlog

from fuelcheck.config import Environment
from fuelcheck.models import OAuthToken, ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, bearer, raw_response, request_json, secret_of

logger = structlog.get_logger()

CODEX_BASE_URL = "https://chatgpt.com/backend-api"


def codex_home(environment: "Environment") -> "Path":
    override = environment.get(["CODEX_HOME"])
    if override:
        return Path(override).expanduser()
    return environment.home / ".codex"


def usage_url(environment: "Environment") -> "str":
    """
    builds the usage endpoint, honouring a `chatgpt_base_url` set in
    the Codex CLI's own config.toml.
    """
    base = CODEX_BASE_URL
    config_path = codex_home(environment) / "config.toml"
    if config_path.is_file():
        try:
            data = tomllib.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            logger.warning("codex_config_unreadable", path=str(config_path))
            data = {}
        configured = data.get("chatgpt_base_url")
        if isinstance(configured, str) and configured.strip():
            base = configured.strip()

    if "/backend-api" not in base:
        base = f"{base.rstrip('/')}/backend-api"
    return f"{base.rstrip('/')}/wham/usage"


async def fetch_oauth(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    headers = bearer(secret_of(ProviderId.CODEX, credential))
    if isinstance(credential, OAuthToken) and credential.account_id:
        headers["ChatGPT-Account-Id"] = credential.account_id

    url = await asyncio.to_thread(usage_url, context.environment)
    payload = await request_json(
        context,
        ProviderId.CODEX,
        "GET",
        url,
        headers=headers,
    )
    return raw_response(ProviderId.CODEX, credential, payload)

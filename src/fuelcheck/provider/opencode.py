import json
import re
import uuid
from typing import Any

import structlog

from fuelcheck.errors import NormalizationError, NormalizationErrorKind
from fuelcheck.models import ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, raw_response, request_text, secret_of
from fuelcheck.resolver import workspace_id

logger = structlog.get_logger()

OPENCODE_BASE_URL = "https://opencode.ai"

# server function ids of the OpenCode console
WORKSPACES_SERVER_ID = "def39973159c7f0483d8793a822b8dbb10d067e12c65455fcb4608459ba0234f"
SUBSCRIPTION_SERVER_ID = "7abeebee372f304e050aaaf92be863f4a86490e382f8c79db68fd94040d691b4"

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36"
)

_WORKSPACE = re.compile(r"wrk_[A-Za-z0-9]+")
_NUMBER = r"([0-9]+(?:\.[0-9]+)?)"


def normalize_workspace_id(raw: "str | None") -> "str | None":
    """
    accepts a bare workspace id or a console URL containing one.
    """
    if raw is None or not raw.strip():
        return None
    text = raw.strip()
    if "opencode.ai" in text:
        match = _WORKSPACE.search(text)
        return match.group(0) if match else None
    return text


def server_params(server_id: "str", method: "str", args: "Any" = None) -> "list[tuple[str, str]]":
    params = [("x-ssr", "1"), ("x-sfn", server_id), ("x-sr", "1"), ("x-tt", "0")]
    if method == "GET" and args is not None:
        params.append(("x-args", json.dumps(args, separators=(",", ":"))))
    return params


async def _server_text(
    context: "FetchContext",
    cookie: "str",
    server_id: "str",
    method: "str",
    referer: "str",
    args: "Any" = None,
) -> "str":
    headers = {
        "Cookie": cookie,
        "x-server-id": server_id,
        "x-server-instance": f"server-fn:{uuid.uuid4()}",
        "User-Agent": BROWSER_USER_AGENT,
        "Origin": OPENCODE_BASE_URL,
        "Referer": referer,
        "Accept": "text/javascript, application/json;q=0.9, */*;q=0.8",
    }
    return await request_text(
        context,
        ProviderId.OPENCODE,
        method,
        f"{OPENCODE_BASE_URL}/_server",
        headers=headers,
        params=server_params(server_id, method, args),
        body=args if method != "GET" else None,
    )


async def _discover_workspace(context: "FetchContext", cookie: "str") -> "str":
    for method, args in (("GET", None), ("POST", [])):
        text = await _server_text(context, cookie, WORKSPACES_SERVER_ID, method, OPENCODE_BASE_URL, args)
        match = _WORKSPACE.search(text)
        if match:
            return match.group(0)
    raise NormalizationError(
        NormalizationErrorKind.UNRECOGNIZED_RESPONSE_SHAPE,
        "opencode: workspace id missing from console response",
    )


async def fetch_web(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    """
    calls the console's server functions: workspace discovery unless
    a workspace id is configured, then the subscription usage. Each
    call is tried as GET first and repeated as POST when the GET answer
    carries nothing usable.
    """
    cookie = secret_of(ProviderId.OPENCODE, credential)
    workspace = normalize_workspace_id(
        workspace_id(ProviderId.OPENCODE, context.provider_config, context.environment)
    )
    if workspace is None:
        workspace = await _discover_workspace(context, cookie)
        logger.debug("opencode_workspace_discovered", workspace=workspace)

    referer = f"{OPENCODE_BASE_URL}/workspace/{workspace}/billing"
    text = await _server_text(context, cookie, SUBSCRIPTION_SERVER_ID, "GET", referer, [workspace])
    if parse_usage(text) is None:
        text = await _server_text(context, cookie, SUBSCRIPTION_SERVER_ID, "POST", referer, [workspace])
    return raw_response(ProviderId.OPENCODE, credential, {"text": text, "workspace": workspace})


def parse_usage(text: "str") -> "tuple[float, float, float, float] | None":
    """
    extracts (rolling percent, rolling reset seconds, weekly percent,
    weekly reset seconds) from a server function answer, which is
    either a JavaScript object literal or embedded JSON.
    """
    values = []
    for window in ("rollingUsage", "weeklyUsage"):
        for key in ("usagePercent", "resetInSec"):
            match = re.search(rf"{window}[^}}]*{key}\s*:\s*{_NUMBER}", text)
            if match is None:
                break
            values.append(float(match.group(1)))
    if len(values) == 4:
        return values[0], values[1], values[2], values[3]

    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        data = json.loads(text[start : end + 1])
    except ValueError:
        return None
    return _find_usage(data)


def _find_usage(node: "Any") -> "tuple[float, float, float, float] | None":
    if isinstance(node, dict):
        rolling = _first_dict(node, ("rollingUsage", "rolling", "rolling_usage"))
        weekly = _first_dict(node, ("weeklyUsage", "weekly", "weekly_usage"))
        if rolling is not None and weekly is not None:
            fields = [
                rolling.get("usagePercent"),
                rolling.get("resetInSec"),
                weekly.get("usagePercent"),
                weekly.get("resetInSec"),
            ]
            if all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in fields):
                return float(fields[0]), float(fields[1]), float(fields[2]), float(fields[3])
        children = list(node.values())
    elif isinstance(node, list):
        children = node
    else:
        return None

    for child in children:
        found = _find_usage(child)
        if found is not None:
            return found
    return None


def _first_dict(node: "dict[str, Any]", keys: "tuple[str, ...]") -> "dict[str, Any] | None":
    for key in keys:
        value = node.get(key)
        if isinstance(value, dict):
            return value
    return None

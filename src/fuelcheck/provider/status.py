import json

import httpx
import structlog

from fuelcheck.models import StatusBadge, StatusIndicator
from fuelcheck.normalize import parse_time

logger = structlog.get_logger()


async def fetch_status(client: "httpx.AsyncClient", base_url: "str") -> "StatusBadge | None":
    """
    reads the Statuspage summary at base_url/api/v2/status.json.

    The badge is decoration: a transport failure or an unreadable body
    yields None, an HTTP error yields an unknown badge naming the status
    code. Nothing here fails the usage fetch it accompanies.
    """
    api_url = f"{base_url.rstrip('/')}/api/v2/status.json"
    try:
        resp = await client.get(api_url)
    except httpx.HTTPError as exc:
        logger.debug("status_unavailable", url=api_url, error=str(exc))
        return None

    if resp.is_error:
        return StatusBadge(
            indicator=StatusIndicator.UNKNOWN,
            url=base_url,
            description=f"HTTP {resp.status_code}",
        )

    try:
        data = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.debug("status_unreadable", url=api_url)
        return None
    return parse_status(data, base_url)


def parse_status(data: "object", base_url: "str") -> "StatusBadge | None":
    if not isinstance(data, dict) or not isinstance(data.get("status"), dict):
        return None
    status = data["status"]
    try:
        indicator = StatusIndicator(status.get("indicator"))
    except ValueError:
        indicator = StatusIndicator.UNKNOWN

    description = status.get("description")
    page = data.get("page")
    updated_at = None
    if isinstance(page, dict):
        updated_at = parse_time(page.get("updated_at"))

    return StatusBadge(
        indicator=indicator,
        url=base_url,
        description=description if isinstance(description, str) else None,
        updated_at=updated_at,
    )

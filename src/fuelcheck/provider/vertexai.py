import asyncio
import base64
import binascii
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import structlog

from fuelcheck.catalog import entry_for
from fuelcheck.config import Environment
from fuelcheck.errors import CredentialError, CredentialErrorKind
from fuelcheck.models import OAuthToken, ProviderId, RawResponse, ResolvedCredential, SourceKind
from fuelcheck.normalize import parse_time
from fuelcheck.provider.base import FetchContext, bearer, raw_response, request_json, secret_of
from fuelcheck.resolver import credential_path

logger = structlog.get_logger()

TOKEN_URL = "https://oauth2.googleapis.com/token"
MONITORING_URL = "https://monitoring.googleapis.com/v3/projects/{project}/timeSeries"

USAGE_FILTER = (
    'metric.type="serviceruntime.googleapis.com/quota/allocation/usage" '
    'AND resource.type="consumer_quota" '
    'AND resource.label.service="aiplatform.googleapis.com"'
)
LIMIT_FILTER = (
    'metric.type="serviceruntime.googleapis.com/quota/limit" '
    'AND resource.type="consumer_quota" '
    'AND resource.label.service="aiplatform.googleapis.com"'
)

PROJECT_ENV = ("GOOGLE_CLOUD_PROJECT", "GCLOUD_PROJECT", "CLOUDSDK_CORE_PROJECT")

# refresh this long before the recorded expiry
REFRESH_MARGIN = timedelta(minutes=5)
QUOTA_LOOKBACK = timedelta(hours=24)


def adc_path(environment: "Environment") -> "Path":
    (adc,) = entry_for(ProviderId.VERTEXAI).files[SourceKind.OAUTH]
    return credential_path(adc, environment)


def gcloud_config_dir(environment: "Environment") -> "Path":
    override = environment.get(["CLOUDSDK_CONFIG"])
    if override:
        return Path(override).expanduser()
    return environment.home / ".config" / "gcloud"


def gcloud_project(environment: "Environment") -> "str | None":
    """
    returns the Google Cloud project from the environment, else the
    `project` of gcloud's default configuration.
    """
    project = environment.get(PROJECT_ENV)
    if project:
        return project

    path = gcloud_config_dir(environment) / "configurations" / "config_default"
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return None
    for line in lines:
        name, sep, value = line.strip().partition("=")
        if sep and name.strip() == "project" and value.strip():
            return value.strip()
    return None


def jwt_email(token: "Any") -> "str | None":
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError):
        return None
    email = claims.get("email") if isinstance(claims, dict) else None
    return email if isinstance(email, str) else None


def _read_adc(path: "Path") -> "dict[str, Any]":
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def needs_refresh(adc: "dict[str, Any]", now: "datetime") -> "bool":
    if not adc.get("access_token"):
        return True
    expiry = parse_time(adc.get("token_expiry"))
    return expiry is None or expiry - REFRESH_MARGIN <= now


async def _access_token(
    credential: "ResolvedCredential",
    context: "FetchContext",
    adc: "dict[str, Any]",
) -> "tuple[str, str | None]":
    email = jwt_email(adc.get("id_token"))
    refresh = {key: adc.get(key) for key in ("client_id", "client_secret", "refresh_token")}
    if not needs_refresh(adc, datetime.now(timezone.utc)):
        return adc["access_token"], email
    if not all(isinstance(value, str) and value for value in refresh.values()):
        # no refresh material; the resolved token is all there is
        return secret_of(ProviderId.VERTEXAI, credential), email

    logger.debug("vertexai_token_refresh")
    token = await request_json(
        context,
        ProviderId.VERTEXAI,
        "POST",
        TOKEN_URL,
        form={**refresh, "grant_type": "refresh_token"},
    )
    if not isinstance(token, dict):
        token = {}
    access = token.get("access_token")
    if not isinstance(access, str) or not access:
        access = adc.get("access_token") or ""
    return access, jwt_email(token.get("id_token")) or email


async def _time_series(
    context: "FetchContext",
    project: "str",
    access_token: "str",
    query_filter: "str",
    now: "datetime",
) -> "list[Any]":
    series: "list[Any]" = []
    page_token = None
    while True:
        params = [
            ("filter", query_filter),
            ("interval.startTime", (now - QUOTA_LOOKBACK).isoformat()),
            ("interval.endTime", now.isoformat()),
            ("view", "FULL"),
        ]
        if page_token:
            params.append(("pageToken", page_token))
        page = await request_json(
            context,
            ProviderId.VERTEXAI,
            "GET",
            MONITORING_URL.format(project=project),
            headers=bearer(access_token),
            params=params,
        )
        if not isinstance(page, dict):
            break
        series.extend(page.get("timeSeries") or [])
        page_token = page.get("nextPageToken")
        if not page_token:
            break
    return series


async def fetch_oauth(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    """
    uses gcloud application default credentials, refreshing the access
    token when it is about to expire, and reads the Vertex AI quota
    usage and limit series of the last day from Cloud Monitoring.
    """
    environment = context.environment
    adc = await asyncio.to_thread(_read_adc, adc_path(environment))
    access_token, email = await _access_token(credential, context, adc)

    project = await asyncio.to_thread(gcloud_project, environment)
    if project is None and isinstance(credential, OAuthToken):
        project = credential.account_id
    if project is None:
        raise CredentialError(
            CredentialErrorKind.MISSING_CREDENTIAL,
            "vertexai: no Google Cloud project configured",
        )

    now = datetime.now(timezone.utc)
    usage = await _time_series(context, project, access_token, USAGE_FILTER, now)
    limits = await _time_series(context, project, access_token, LIMIT_FILTER, now)
    return raw_response(
        ProviderId.VERTEXAI,
        credential,
        {"usage": usage, "limits": limits, "project": project, "email": email},
    )

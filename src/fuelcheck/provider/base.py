import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

import httpx
import structlog

from fuelcheck.config import Environment, ProviderConfig
from fuelcheck.errors import (
    FetchError,
    FetchErrorKind,
    NormalizationError,
    NormalizationErrorKind,
)
from fuelcheck.models import (
    ApiKey,
    CookieHeader,
    OAuthToken,
    ProviderId,
    RawResponse,
    ResolvedCredential,
)

logger = structlog.get_logger()

USER_AGENT = "fuelcheck"


@dataclass(frozen=True, slots=True)
class FetchContext:
    """
    FetchContext is the read-only material a fetcher may use besides
    its credential: the provider's configuration, the environment
    snapshot and the HTTP client shared by one orchestration run.
    """

    provider_config: "ProviderConfig"
    environment: "Environment"
    client: "httpx.AsyncClient"


class UsageFetcher(Protocol):
    """
    UsageFetcher stands as the common protocol for every provider
    fetch capability.

    A fetcher performs a single network, subprocess or file call for
    one resolved credential and hands back the decoded payload. It
    never mutates the credential and never retries.
    """

    async def __call__(
        self,
        credential: "ResolvedCredential",
        context: "FetchContext",
    ) -> "RawResponse": ...


def raw_response(
    provider: "ProviderId",
    credential: "ResolvedCredential",
    payload: "Mapping[str, Any]",
) -> "RawResponse":
    return RawResponse(
        provider=provider,
        source=credential.source,
        payload=payload,
        fetched_at=datetime.now(timezone.utc),
        account=credential.label,
    )


async def send(
    context: "FetchContext",
    provider: "ProviderId",
    method: "str",
    url: "str",
    *,
    headers: "Mapping[str, str] | None" = None,
    body: "Any" = None,
    form: "Mapping[str, str] | None" = None,
    params: "Mapping[str, str] | list[tuple[str, str]] | None" = None,
) -> "httpx.Response":
    """
    sends one request, mapping transport and HTTP failures onto the
    fetch error taxonomy. body is sent as JSON, form as a urlencoded
    body.
    """
    logger.debug("provider_request", provider=str(provider), method=method, url=url)
    try:
        resp = await context.client.request(
            method, url, headers=headers, json=body, data=form, params=params
        )
    except httpx.TimeoutException as exc:
        raise FetchError(FetchErrorKind.TIMEOUT, f"{provider}: request timed out") from exc
    except httpx.TransportError as exc:
        raise FetchError(
            FetchErrorKind.TRANSPORT_FAILURE, f"{provider}: {exc.__class__.__name__}: {exc}"
        ) from exc

    check_status(provider, resp)
    return resp


async def request_text(
    context: "FetchContext",
    provider: "ProviderId",
    method: "str",
    url: "str",
    **kwargs: "Any",
) -> "str":
    resp = await send(context, provider, method, url, **kwargs)
    return resp.text


async def request_json(
    context: "FetchContext",
    provider: "ProviderId",
    method: "str",
    url: "str",
    **kwargs: "Any",
) -> "Any":
    """
    sends one request and decodes its JSON body.
    """
    resp = await send(context, provider, method, url, **kwargs)

    try:
        return resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise NormalizationError(
            NormalizationErrorKind.UNRECOGNIZED_RESPONSE_SHAPE,
            f"{provider}: response is not JSON",
        ) from exc


def check_status(provider: "ProviderId", resp: "httpx.Response") -> "None":
    if resp.status_code in (401, 403):
        logger.debug("provider_auth_rejected", provider=str(provider), status=resp.status_code)
        raise FetchError(
            FetchErrorKind.AUTHENTICATION_REJECTED,
            _with_detail(f"{provider}: unauthorized (HTTP {resp.status_code})", resp),
        )
    if resp.is_error:
        raise FetchError(
            FetchErrorKind.REMOTE_UNAVAILABLE,
            _with_detail(f"{provider}: API error (HTTP {resp.status_code})", resp),
        )


def _with_detail(message: "str", resp: "httpx.Response") -> "str":
    detail = error_detail(resp)
    if detail:
        return f"{message}: {detail}"
    return message


def error_detail(resp: "httpx.Response") -> "str | None":
    """
    extracts a provider-reported message from an error body,
    when the body carries one.
    """
    try:
        data = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return envelope_message(data)


def envelope_message(data: "Any") -> "str | None":
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message") or error.get("type")
        if isinstance(message, str) and message.strip():
            return message.strip()
    if isinstance(error, str) and error.strip():
        return error.strip()
    message = data.get("message") or data.get("detail")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return None


def secret_of(provider: "ProviderId", credential: "ResolvedCredential") -> "str":
    """
    returns the secret an HTTP fetcher sends: a token, a key or a
    cookie header. CLI and local credentials carry no secret.
    """
    if isinstance(credential, OAuthToken):
        return credential.token
    if isinstance(credential, ApiKey):
        return credential.key
    if isinstance(credential, CookieHeader):
        return credential.header
    raise FetchError(
        FetchErrorKind.UNSUPPORTED_OPERATION,
        f"{provider}: {credential.source} credentials cannot be sent over HTTP",
    )


def bearer(token: "str") -> "dict[str, str]":
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/json",
        "User-Agent": USER_AGENT,
    }

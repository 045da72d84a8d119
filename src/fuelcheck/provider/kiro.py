import asyncio
import contextlib
import re

import structlog

from fuelcheck.errors import FetchError, FetchErrorKind
from fuelcheck.models import CliInvocation, ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, raw_response

logger = structlog.get_logger()

CLI_TIMEOUT_SECONDS = 20.0

_ANSI = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


def strip_ansi(text: "str") -> "str":
    return _ANSI.sub("", text)


async def fetch_cli(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    """
    runs `kiro-cli chat --no-interactive /usage` and hands back its
    plain-text report with terminal escapes removed.
    """
    if not isinstance(credential, CliInvocation):
        raise FetchError(FetchErrorKind.UNSUPPORTED_OPERATION, "kiro: expects a CLI invocation")

    logger.debug("kiro_cli_start", argv=list(credential.argv))
    try:
        proc = await asyncio.create_subprocess_exec(
            *credential.argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(context.environment.variables) or None,
        )
    except OSError as exc:
        raise FetchError(FetchErrorKind.TRANSPORT_FAILURE, f"kiro: cannot start kiro-cli: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=CLI_TIMEOUT_SECONDS)
    except TimeoutError as exc:
        raise FetchError(FetchErrorKind.TIMEOUT, "kiro: kiro-cli did not answer in time") from exc
    finally:
        # also reached when the caller cancels this task
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    if proc.returncode != 0:
        detail = strip_ansi(stderr.decode("utf-8", errors="replace")).strip()
        message = "kiro: kiro-cli failed; ensure it is installed and logged in"
        if detail:
            message = f"{message}: {detail.splitlines()[-1]}"
        raise FetchError(FetchErrorKind.REMOTE_UNAVAILABLE, message)

    text = strip_ansi(stdout.decode("utf-8", errors="replace"))
    return raw_response(ProviderId.KIRO, credential, {"text": text})

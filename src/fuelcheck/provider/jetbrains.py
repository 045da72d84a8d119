import asyncio

from fuelcheck.errors import FetchError, FetchErrorKind
from fuelcheck.models import LocalFilePath, ProviderId, RawResponse, ResolvedCredential
from fuelcheck.provider.base import FetchContext, raw_response


async def fetch_local(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
    """
    reads the AI Assistant quota state the IDE keeps on disk.
    """
    if not isinstance(credential, LocalFilePath):
        raise FetchError(FetchErrorKind.UNSUPPORTED_OPERATION, "jetbrains: expects a local file")

    try:
        xml = await asyncio.to_thread(credential.path.read_text, encoding="utf-8")
    except OSError as exc:
        raise FetchError(
            FetchErrorKind.TRANSPORT_FAILURE, f"jetbrains: cannot read {credential.path}: {exc}"
        ) from exc

    return raw_response(
        ProviderId.JETBRAINS, credential, {"xml": xml, "path": str(credential.path)}
    )

from fuelcheck.errors import FetchError, FetchErrorKind
from fuelcheck.models import ProviderId, SourceKind
from fuelcheck.provider import (
    amp,
    claude,
    codex,
    copilot,
    cursor,
    factory,
    gemini,
    jetbrains,
    kimi,
    kimi_k2,
    kiro,
    minimax,
    opencode,
    vertexai,
    warp,
    zai,
)
from fuelcheck.provider.base import UsageFetcher

FETCHERS: "dict[tuple[ProviderId, SourceKind], UsageFetcher]" = {
    (ProviderId.CODEX, SourceKind.OAUTH): codex.fetch_oauth,
    (ProviderId.CLAUDE, SourceKind.OAUTH): claude.fetch_oauth,
    (ProviderId.CLAUDE, SourceKind.WEB): claude.fetch_web,
    (ProviderId.CURSOR, SourceKind.WEB): cursor.fetch_web,
    (ProviderId.COPILOT, SourceKind.API): copilot.fetch_api,
    (ProviderId.ZAI, SourceKind.API): zai.fetch_api,
    (ProviderId.MINIMAX, SourceKind.API): minimax.fetch_api,
    (ProviderId.MINIMAX, SourceKind.WEB): minimax.fetch_web,
    (ProviderId.KIMI_K2, SourceKind.API): kimi_k2.fetch_api,
    (ProviderId.WARP, SourceKind.API): warp.fetch_api,
    (ProviderId.GEMINI, SourceKind.API): gemini.fetch_api,
    (ProviderId.KIRO, SourceKind.CLI): kiro.fetch_cli,
    (ProviderId.JETBRAINS, SourceKind.LOCAL): jetbrains.fetch_local,
    (ProviderId.AMP, SourceKind.WEB): amp.fetch_web,
    (ProviderId.FACTORY, SourceKind.WEB): factory.fetch_usage,
    (ProviderId.FACTORY, SourceKind.API): factory.fetch_usage,
    (ProviderId.KIMI, SourceKind.API): kimi.fetch_api,
    (ProviderId.OPENCODE, SourceKind.WEB): opencode.fetch_web,
    (ProviderId.VERTEXAI, SourceKind.OAUTH): vertexai.fetch_oauth,
}


def fetcher_for(
    provider: "ProviderId",
    source: "SourceKind",
    fetchers: "dict[tuple[ProviderId, SourceKind], UsageFetcher] | None" = None,
) -> "UsageFetcher":
    table = FETCHERS if fetchers is None else fetchers
    try:
        return table[(provider, source)]
    except KeyError:
        raise FetchError(
            FetchErrorKind.UNSUPPORTED_OPERATION,
            f"{provider}: usage fetch not implemented for source {source}",
        ) from None

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from fuelcheck.config import Config, parse_provider_id
from fuelcheck.models import ProviderId, SourceKind

OAUTH = SourceKind.OAUTH
WEB = SourceKind.WEB
API = SourceKind.API
CLI = SourceKind.CLI
LOCAL = SourceKind.LOCAL


@dataclass(frozen=True, slots=True)
class CredentialFile:
    """
    CredentialFile describes a JSON credential file a provider's own
    tooling writes to disk. The file lives at home/relative_path, or
    under the directory named by dir_env when that variable is set.
    Key paths are walked in order and the first non-empty string wins.
    """

    relative_path: "str"
    token_keys: "tuple[tuple[str, ...], ...]"
    account_id_keys: "tuple[tuple[str, ...], ...]" = ()
    dir_env: "str | None" = None


@dataclass(frozen=True, slots=True)
class ProviderEntry:
    id: "ProviderId"
    display_name: "str"
    allowed: "tuple[SourceKind, ...]"
    # candidate order tried for `auto`; the first entry is the default
    auto_order: "tuple[SourceKind, ...]"
    # source the token account tokens are used as, None when unsupported
    token_account_source: "SourceKind | None" = None
    env: "Mapping[SourceKind, tuple[str, ...]]" = field(default_factory=dict)
    files: "Mapping[SourceKind, tuple[CredentialFile, ...]]" = field(default_factory=dict)
    cli_argv: "tuple[str, ...]" = ()
    local_roots: "tuple[str, ...]" = ()
    local_glob: "str | None" = None
    # has a local session-log reader for cost reports
    cost_reports: "bool" = False
    # Statuspage site whose status badge `--status` shows
    status_url: "str | None" = None

    @property
    def default_source(self) -> "SourceKind":
        return self.auto_order[0]

    @property
    def supports_token_accounts(self) -> "bool":
        return self.token_account_source is not None


_JETBRAINS_ROOTS = (
    ".config/JetBrains",
    ".config/Google",
    "Library/Application Support/JetBrains",
    "Library/Application Support/Google",
)

CATALOG: "dict[ProviderId, ProviderEntry]" = {
    entry.id: entry
    for entry in (
        ProviderEntry(
            id=ProviderId.CODEX,
            display_name="Codex",
            allowed=(OAUTH, CLI),
            auto_order=(OAUTH, CLI),
            token_account_source=OAUTH,
            files={
                OAUTH: (
                    CredentialFile(
                        relative_path=".codex/auth.json",
                        token_keys=(("OPENAI_API_KEY",), ("tokens", "access_token")),
                        account_id_keys=(("tokens", "account_id"),),
                        dir_env="CODEX_HOME",
                    ),
                ),
            },
            cli_argv=("codex", "app-server"),
            cost_reports=True,
            status_url="https://status.openai.com",
        ),
        ProviderEntry(
            id=ProviderId.CLAUDE,
            display_name="Claude",
            allowed=(OAUTH, WEB, CLI),
            auto_order=(OAUTH, WEB),
            token_account_source=OAUTH,
            env={
                OAUTH: ("CLAUDE_CODE_OAUTH_TOKEN",),
                WEB: ("CLAUDE_COOKIE", "CLAUDE_COOKIE_HEADER"),
            },
            files={
                OAUTH: (
                    CredentialFile(
                        relative_path=".claude/.credentials.json",
                        token_keys=(("claudeAiOauth", "accessToken"),),
                    ),
                ),
            },
            cli_argv=("claude", "/usage"),
            status_url="https://status.claude.com",
        ),
        ProviderEntry(
            id=ProviderId.GEMINI,
            display_name="Gemini",
            allowed=(API,),
            auto_order=(API,),
            files={
                API: (
                    CredentialFile(
                        relative_path=".gemini/oauth_creds.json",
                        token_keys=(("access_token",),),
                    ),
                ),
            },
        ),
        ProviderEntry(
            id=ProviderId.CURSOR,
            display_name="Cursor",
            allowed=(WEB, API),
            auto_order=(WEB,),
            token_account_source=WEB,
            env={WEB: ("CURSOR_COOKIE", "CURSOR_COOKIE_HEADER")},
        ),
        ProviderEntry(
            id=ProviderId.FACTORY,
            display_name="Droid",
            allowed=(WEB, API),
            auto_order=(WEB,),
            env={
                WEB: ("FACTORY_COOKIE", "DROID_COOKIE"),
                API: ("FACTORY_BEARER_TOKEN",),
            },
            status_url="https://status.factory.ai",
        ),
        ProviderEntry(
            id=ProviderId.ZAI,
            display_name="z.ai",
            allowed=(API,),
            auto_order=(API,),
            env={API: ("Z_AI_API_KEY",)},
        ),
        ProviderEntry(
            id=ProviderId.MINIMAX,
            display_name="MiniMax",
            allowed=(API, WEB),
            auto_order=(API, WEB),
            env={
                API: ("MINIMAX_API_KEY",),
                WEB: ("MINIMAX_COOKIE", "MINIMAX_COOKIE_HEADER"),
            },
        ),
        ProviderEntry(
            id=ProviderId.KIMI,
            display_name="Kimi",
            allowed=(API,),
            auto_order=(API,),
            env={API: ("KIMI_AUTH_TOKEN",)},
        ),
        ProviderEntry(
            id=ProviderId.KIMI_K2,
            display_name="Kimi K2",
            allowed=(API,),
            auto_order=(API,),
            env={API: ("KIMI_K2_API_KEY", "KIMI_API_KEY", "KIMI_KEY")},
        ),
        ProviderEntry(
            id=ProviderId.COPILOT,
            display_name="Copilot",
            allowed=(API,),
            auto_order=(API,),
            env={API: ("COPILOT_API_TOKEN", "GITHUB_TOKEN")},
        ),
        ProviderEntry(
            id=ProviderId.KIRO,
            display_name="Kiro",
            allowed=(CLI,),
            auto_order=(CLI,),
            cli_argv=("kiro-cli", "chat", "--no-interactive", "/usage"),
        ),
        ProviderEntry(
            id=ProviderId.VERTEXAI,
            display_name="Vertex AI",
            allowed=(OAUTH,),
            auto_order=(OAUTH,),
            files={
                OAUTH: (
                    CredentialFile(
                        relative_path=".config/gcloud/application_default_credentials.json",
                        token_keys=(("access_token",), ("refresh_token",)),
                        account_id_keys=(("quota_project_id",),),
                        dir_env="CLOUDSDK_CONFIG",
                    ),
                ),
            },
        ),
        ProviderEntry(
            id=ProviderId.JETBRAINS,
            display_name="JetBrains AI",
            allowed=(LOCAL,),
            auto_order=(LOCAL,),
            local_roots=_JETBRAINS_ROOTS,
            local_glob="**/options/AIAssistantQuotaManager2.xml",
        ),
        ProviderEntry(
            id=ProviderId.AMP,
            display_name="Amp",
            allowed=(WEB,),
            auto_order=(WEB,),
            env={WEB: ("AMP_COOKIE", "AMP_COOKIE_HEADER")},
        ),
        ProviderEntry(
            id=ProviderId.WARP,
            display_name="Warp",
            allowed=(API,),
            auto_order=(API,),
            env={API: ("WARP_API_KEY", "WARP_TOKEN")},
        ),
        ProviderEntry(
            id=ProviderId.OPENCODE,
            display_name="OpenCode",
            allowed=(WEB,),
            auto_order=(WEB,),
            env={WEB: ("OPENCODE_COOKIE", "OPENCODE_COOKIE_HEADER")},
        ),
    )
}

# environment fallback for ProviderConfig.workspace_id
WORKSPACE_ENV: "dict[ProviderId, tuple[str, ...]]" = {
    ProviderId.OPENCODE: ("CODEXBAR_OPENCODE_WORKSPACE_ID",),
}


def entry_for(provider: "ProviderId") -> "ProviderEntry":
    return CATALOG[provider]


def select_providers(selectors: "Iterable[str]", config: "Config") -> "list[ProviderId]":
    """
    expands command line provider selectors into an ordered,
    de-duplicated list of provider ids. `all` expands to the
    providers enabled in config right now, `both` to codex and
    claude. No selectors at all behaves like `all`.
    Raises ValueError on an unknown selector.
    """
    selected: "list[ProviderId]" = []

    def add(provider: "ProviderId") -> "None":
        if provider not in selected:
            selected.append(provider)

    names = [name.strip().lower() for raw in selectors for name in raw.split(",") if name.strip()]
    if not names:
        names = ["all"]

    for name in names:
        if name == "all":
            for provider in config.enabled_providers():
                add(provider)
        elif name == "both":
            add(ProviderId.CODEX)
            add(ProviderId.CLAUDE)
        else:
            add(parse_provider_id(name))

    return selected

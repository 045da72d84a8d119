import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import structlog

from fuelcheck.errors import ConfigError
from fuelcheck.models import ProviderId, SourceKind

logger = structlog.get_logger()

CONFIG_ENV_VAR = "FUELCHECK_CONFIG"

DEFAULT_PROVIDERS: "tuple[ProviderId, ...]" = (
    ProviderId.CODEX,
    ProviderId.CLAUDE,
    ProviderId.GEMINI,
    ProviderId.CURSOR,
)

PROVIDER_ALIASES: "dict[str, ProviderId]" = {
    "droid": ProviderId.FACTORY,
    "kimik2": ProviderId.KIMI_K2,
    "kimi_k2": ProviderId.KIMI_K2,
    "vertex-ai": ProviderId.VERTEXAI,
    "jet-brains": ProviderId.JETBRAINS,
    "open-code": ProviderId.OPENCODE,
    "mini-max": ProviderId.MINIMAX,
}


def parse_provider_id(raw: "str") -> "ProviderId":
    """
    parses a provider id or one of its aliases, case-insensitively.
    Raises ValueError for unknown names.
    """
    name = raw.strip().lower()
    if name in PROVIDER_ALIASES:
        return PROVIDER_ALIASES[name]
    return ProviderId(name)


@dataclass(frozen=True, slots=True)
class TokenAccount:
    token: "str | None" = field(default=None, repr=False)
    label: "str | None" = None
    id: "str | None" = None
    added_at: "int | None" = None
    last_used: "int | None" = None

    def display_label(self, index: "int") -> "str":
        for value in (self.label, self.id):
            if value and value.strip():
                return value.strip()
        return f"account-{index + 1}"


@dataclass(frozen=True, slots=True)
class TokenAccountSet:
    """
    TokenAccountSet is an ordered list of accounts plus the index of
    the active one. An out-of-range active index makes the set invalid;
    the resolver reports it instead of silently clamping.
    """

    accounts: "tuple[TokenAccount, ...]" = ()
    active_index: "int | None" = None
    version: "int | None" = None

    @property
    def is_empty(self) -> "bool":
        return not self.accounts

    def find(self, name: "str") -> "int | None":
        needle = name.strip().lower()
        if not needle:
            return None
        for index, account in enumerate(self.accounts):
            for value in (account.label, account.id):
                if value and value.strip().lower() == needle:
                    return index
        return None


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    id: "ProviderId"
    enabled: "bool | None" = None
    source: "SourceKind | None" = None
    cookie_source: "str | None" = None
    cookie_header: "str | None" = field(default=None, repr=False)
    api_key: "str | None" = field(default=None, repr=False)
    region: "str | None" = None
    workspace_id: "str | None" = None
    token_accounts: "TokenAccountSet | None" = None

    @property
    def is_enabled(self) -> "bool":
        # absent means enabled, matching the CodexBar config format
        return self.enabled is not False


@dataclass(frozen=True, slots=True)
class Config:
    """
    Config is the loaded configuration document. It is read-only for
    the whole invocation and passed explicitly to every component.
    """

    version: "int | None" = None
    providers: "tuple[ProviderConfig, ...]" = ()

    def provider_config(self, provider: "ProviderId") -> "ProviderConfig":
        for cfg in self.providers:
            if cfg.id == provider:
                return cfg
        return ProviderConfig(id=provider)

    def enabled_providers(self) -> "list[ProviderId]":
        enabled = [cfg.id for cfg in self.providers if cfg.is_enabled]
        if not enabled:
            return list(DEFAULT_PROVIDERS)
        return enabled

    @classmethod
    def from_dict(cls, data: "Mapping[str, Any]") -> "Config":
        if not isinstance(data, Mapping):
            raise ConfigError("config root must be a JSON object")

        providers: "list[ProviderConfig]" = []
        for index, entry in enumerate(data.get("providers") or []):
            if not isinstance(entry, Mapping):
                raise ConfigError(f"providers[{index}] must be an object")
            providers.append(_provider_from_dict(entry, index))

        return cls(version=_optional_int(data.get("version"), "version"), providers=tuple(providers))

    @classmethod
    def load(cls, path: "Path") -> "Config":
        """
        loads the configuration document at path. A missing file yields
        the default (empty) configuration.
        """
        if not path.exists():
            logger.info("config_missing", path=str(path))
            return cls()

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"parse config {path}: {exc}") from exc
        except OSError as exc:
            raise ConfigError(f"read config {path}: {exc}") from exc

        config = cls.from_dict(data)
        logger.info("config_loaded", path=str(path), providers=len(config.providers))
        return config

    def to_dict(self, redact: "bool" = True) -> "dict[str, Any]":
        def secret(value: "str | None") -> "str | None":
            if value is None or not redact:
                return value
            return "<redacted>"

        providers = []
        for cfg in self.providers:
            entry: "dict[str, Any]" = {
                "id": cfg.id.value,
                "enabled": cfg.enabled,
                "source": cfg.source.value if cfg.source else None,
                "cookie_source": cfg.cookie_source,
                "cookie_header": secret(cfg.cookie_header),
                "api_key": secret(cfg.api_key),
                "region": cfg.region,
                "workspace_id": cfg.workspace_id,
                "token_accounts": None,
            }
            if cfg.token_accounts is not None:
                entry["token_accounts"] = {
                    "version": cfg.token_accounts.version,
                    "active_index": cfg.token_accounts.active_index,
                    "accounts": [
                        {
                            "id": account.id,
                            "label": account.label,
                            "token": secret(account.token),
                            "added_at": account.added_at,
                            "last_used": account.last_used,
                        }
                        for account in cfg.token_accounts.accounts
                    ],
                }
            providers.append(entry)
        return {"version": self.version, "providers": providers}


@dataclass(frozen=True, slots=True)
class Environment:
    """
    Environment is an immutable snapshot of the process environment
    and home directory. Environment values are only a fallback for
    absent configuration fields.
    """

    variables: "Mapping[str, str]" = field(default_factory=dict, repr=False)
    home: "Path" = field(default_factory=Path.home)

    @classmethod
    def current(cls, home: "Path | None" = None) -> "Environment":
        return cls(variables=dict(os.environ), home=home or Path.home())

    def get(self, names: "tuple[str, ...] | list[str]") -> "str | None":
        """
        returns the first non-empty (trimmed) value among names.
        """
        for name in names:
            value = self.variables.get(name)
            if value is not None and value.strip():
                return value.strip()
        return None


def default_config_path(environment: "Environment") -> "Path":
    override = environment.get([CONFIG_ENV_VAR])
    if override:
        return Path(override).expanduser()
    return environment.home / ".codexbar" / "config.json"


def _provider_from_dict(entry: "Mapping[str, Any]", index: "int") -> "ProviderConfig":
    raw_id = entry.get("id")
    if not isinstance(raw_id, str):
        raise ConfigError(f"providers[{index}].id must be a string")
    try:
        provider = parse_provider_id(raw_id)
    except ValueError as exc:
        raise ConfigError(f"providers[{index}]: unknown provider {raw_id!r}") from exc

    source = None
    raw_source = entry.get("source")
    if raw_source is not None:
        try:
            source = SourceKind(str(raw_source).lower())
        except ValueError as exc:
            raise ConfigError(f"providers[{index}]: unknown source {raw_source!r}") from exc

    enabled = entry.get("enabled")
    if enabled is not None and not isinstance(enabled, bool):
        raise ConfigError(f"providers[{index}].enabled must be a boolean")

    return ProviderConfig(
        id=provider,
        enabled=enabled,
        source=source,
        cookie_source=_optional_str(entry.get("cookie_source")),
        cookie_header=_optional_str(entry.get("cookie_header")),
        api_key=_optional_str(entry.get("api_key")),
        region=_optional_str(entry.get("region")),
        workspace_id=_optional_str(entry.get("workspace_id")),
        token_accounts=_token_accounts_from_dict(entry.get("token_accounts"), index),
    )


def _token_accounts_from_dict(raw: "Any", index: "int") -> "TokenAccountSet | None":
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ConfigError(f"providers[{index}].token_accounts must be an object")

    accounts = []
    for account in raw.get("accounts") or []:
        if not isinstance(account, Mapping):
            raise ConfigError(f"providers[{index}].token_accounts.accounts entries must be objects")
        accounts.append(
            TokenAccount(
                token=_optional_str(account.get("token")),
                label=_optional_str(account.get("label")),
                id=_optional_str(account.get("id")),
                added_at=_optional_int(account.get("added_at"), "added_at"),
                last_used=_optional_int(account.get("last_used"), "last_used"),
            )
        )

    return TokenAccountSet(
        accounts=tuple(accounts),
        active_index=_optional_int(raw.get("active_index"), "active_index"),
        version=_optional_int(raw.get("version"), "version"),
    )


def _optional_str(value: "Any") -> "str | None":
    if value is None:
        return None
    return str(value)


def _optional_int(value: "Any", name: "str") -> "int | None":
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer")
    return value

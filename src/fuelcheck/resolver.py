import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import structlog

from fuelcheck.catalog import WORKSPACE_ENV, CredentialFile, ProviderEntry, entry_for
from fuelcheck.config import Environment, ProviderConfig, TokenAccountSet
from fuelcheck.errors import CredentialError, CredentialErrorKind
from fuelcheck.models import (
    ApiKey,
    CliInvocation,
    CookieHeader,
    LocalFilePath,
    OAuthToken,
    ProviderId,
    ResolvedCredential,
    SourceKind,
)

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class AccountSelection:
    """
    AccountSelection overrides the configured active token account.
    index is zero-based; label matches an account label or id.
    all_accounts asks for one fetch per configured account instead.
    """

    label: "str | None" = None
    index: "int | None" = None
    all_accounts: "bool" = False

    @property
    def is_set(self) -> "bool":
        return self.label is not None or self.index is not None


def resolve(
    provider: "ProviderId",
    provider_config: "ProviderConfig",
    environment: "Environment",
    source: "SourceKind | None" = None,
    account: "AccountSelection | None" = None,
) -> "ResolvedCredential":
    """
    resolves the credential a provider fetch should use.

    source overrides provider_config.source, which in turn overrides
    `auto`. A requested source outside the provider's allowed set fails
    before any material is looked up. For `auto` the provider's
    candidate order is walked lazily and the first candidate with
    usable material wins. Only local checks are made here: presence,
    non-emptiness and structural sanity.
    """
    entry = entry_for(provider)
    requested = source or provider_config.source or SourceKind.AUTO

    if requested is not SourceKind.AUTO and requested not in entry.allowed:
        allowed = ", ".join(kind.value for kind in entry.allowed)
        raise CredentialError(
            CredentialErrorKind.UNSUPPORTED_SOURCE,
            f"{provider} does not support source {requested.value} (allowed: {allowed})",
        )

    kinds = entry.auto_order if requested is SourceKind.AUTO else (requested,)
    for credential in _candidates(entry, kinds, provider_config, environment, account):
        logger.debug(
            "credential_resolved",
            provider=str(provider),
            source=str(credential.source),
            origin=credential.origin,
            label=credential.label,
            hint=credential.hint,
        )
        return credential

    tried = ", ".join(kind.value for kind in kinds)
    raise CredentialError(
        CredentialErrorKind.MISSING_CREDENTIAL,
        f"no usable credential for {provider} (tried: {tried})",
    )


class CredentialResolver:
    """
    CredentialResolver binds an environment snapshot and the command
    line overrides so the orchestrator can resolve each provider with
    nothing but its config. It holds no state between calls.
    """

    def __init__(
        self,
        environment: "Environment",
        source: "SourceKind | None" = None,
        account: "AccountSelection | None" = None,
    ) -> "None":
        self._environment = environment
        self._source = source
        self._account = account

    @property
    def environment(self) -> "Environment":
        return self._environment

    @property
    def source(self) -> "SourceKind | None":
        return self._source

    def resolve(
        self,
        provider: "ProviderId",
        provider_config: "ProviderConfig",
        account: "AccountSelection | None" = None,
    ) -> "ResolvedCredential":
        return resolve(
            provider,
            provider_config,
            self._environment,
            source=self._source,
            account=account or self._account,
        )

    def accounts(
        self, provider: "ProviderId", provider_config: "ProviderConfig"
    ) -> "list[tuple[AccountSelection | None, str | None]]":
        """
        returns the (selection, label) pairs to fetch for a provider:
        one per configured token account under --all-accounts, a single
        (None, None) otherwise.
        """
        token_accounts = provider_config.token_accounts
        if (
            self._account is None
            or not self._account.all_accounts
            or not entry_for(provider).supports_token_accounts
            or token_accounts is None
            or token_accounts.is_empty
        ):
            return [(None, None)]
        return [
            (AccountSelection(index=index), account.display_label(index))
            for index, account in enumerate(token_accounts.accounts)
        ]


def select_token_account(
    provider: "ProviderId",
    accounts: "TokenAccountSet | None",
    selection: "AccountSelection | None" = None,
) -> "tuple[int, str, str | None] | None":
    """
    picks the token account to use and returns (index, token, label).
    Returns None when no accounts are configured and nothing was
    explicitly requested.
    """
    if accounts is None or accounts.is_empty:
        if selection is not None and selection.is_set:
            raise CredentialError(
                CredentialErrorKind.MISSING_CREDENTIAL,
                f"{provider}: no token accounts configured",
            )
        return None

    if selection is not None and selection.label is not None:
        index = accounts.find(selection.label)
        if index is None:
            raise CredentialError(
                CredentialErrorKind.INVALID_ACCOUNT_INDEX,
                f"{provider}: account {selection.label!r} not found",
            )
    elif selection is not None and selection.index is not None:
        index = selection.index
    else:
        index = accounts.active_index if accounts.active_index is not None else 0

    if index < 0 or index >= len(accounts.accounts):
        raise CredentialError(
            CredentialErrorKind.INVALID_ACCOUNT_INDEX,
            f"{provider}: account index {index} out of range "
            f"({len(accounts.accounts)} configured)",
        )

    account = accounts.accounts[index]
    label = account.display_label(index)
    token = (account.token or "").strip()
    if not token:
        raise CredentialError(
            CredentialErrorKind.MISSING_CREDENTIAL,
            f"{provider}: token account {label} has no token",
        )

    return index, token, label


def _candidates(
    entry: "ProviderEntry",
    kinds: "tuple[SourceKind, ...]",
    provider_config: "ProviderConfig",
    environment: "Environment",
    account: "AccountSelection | None",
) -> "Iterator[ResolvedCredential]":
    # lazy: nothing past the first usable candidate is touched
    for kind in kinds:
        credential = _lookup(entry, kind, provider_config, environment, account)
        if credential is not None:
            yield credential
        else:
            logger.debug("credential_candidate_empty", provider=str(entry.id), source=kind.value)


def _lookup(
    entry: "ProviderEntry",
    kind: "SourceKind",
    provider_config: "ProviderConfig",
    environment: "Environment",
    account: "AccountSelection | None",
) -> "ResolvedCredential | None":
    selected = None
    if entry.token_account_source is kind:
        selected = select_token_account(entry.id, provider_config.token_accounts, account)

    if kind is SourceKind.OAUTH:
        return _oauth(entry, provider_config, environment, selected)
    if kind is SourceKind.WEB:
        return _web(entry, provider_config, environment, selected)
    if kind is SourceKind.API:
        return _api(entry, provider_config, environment)
    if kind is SourceKind.CLI:
        return _cli(entry, environment)
    if kind is SourceKind.LOCAL:
        return _local(entry, environment)
    return None


def _oauth(
    entry: "ProviderEntry",
    provider_config: "ProviderConfig",
    environment: "Environment",
    selected: "tuple[int, str, str | None] | None",
) -> "OAuthToken | None":
    if selected is not None:
        index, token, label = selected
        accounts = provider_config.token_accounts
        account_id = accounts.accounts[index].id if accounts is not None else None
        return OAuthToken(
            source=SourceKind.OAUTH,
            token=token,
            account_id=account_id or None,
            label=label,
            origin=f"token_accounts[{index}]",
        )

    value = environment.get(entry.env.get(SourceKind.OAUTH, ()))
    if value:
        return OAuthToken(source=SourceKind.OAUTH, token=value, origin="env")

    found = _from_files(entry.files.get(SourceKind.OAUTH, ()), environment)
    if found is not None:
        token, account_id, path = found
        return OAuthToken(
            source=SourceKind.OAUTH,
            token=token,
            account_id=account_id,
            origin=str(path),
        )
    return None


def _web(
    entry: "ProviderEntry",
    provider_config: "ProviderConfig",
    environment: "Environment",
    selected: "tuple[int, str, str | None] | None",
) -> "CookieHeader | None":
    mode = (provider_config.cookie_source or "auto").strip().lower()
    if mode == "off":
        return None

    if selected is not None:
        index, token, label = selected
        if not _looks_like_cookie(token):
            raise CredentialError(
                CredentialErrorKind.MISSING_CREDENTIAL,
                f"{entry.id}: token account {label} is not a cookie header",
            )
        return CookieHeader(
            source=SourceKind.WEB,
            header=token,
            label=label,
            origin=f"token_accounts[{index}]",
        )

    origin = "config"
    header = (provider_config.cookie_header or "").strip()
    # manual: only the configured header counts
    if not header and mode != "manual":
        origin = "env"
        header = environment.get(entry.env.get(SourceKind.WEB, ())) or ""
    if not header:
        return None
    if not _looks_like_cookie(header):
        logger.warning("cookie_header_malformed", provider=str(entry.id), origin=origin)
        return None
    return CookieHeader(source=SourceKind.WEB, header=header, origin=origin)


def _api(
    entry: "ProviderEntry",
    provider_config: "ProviderConfig",
    environment: "Environment",
) -> "ApiKey | OAuthToken | None":
    key = (provider_config.api_key or "").strip()
    if key:
        return ApiKey(source=SourceKind.API, key=key, origin="config")

    key = environment.get(entry.env.get(SourceKind.API, ())) or ""
    if key:
        return ApiKey(source=SourceKind.API, key=key, origin="env")

    # api-sourced providers that sign in through a CLI keep an access
    # token on disk instead of a key
    found = _from_files(entry.files.get(SourceKind.API, ()), environment)
    if found is not None:
        token, account_id, path = found
        return OAuthToken(
            source=SourceKind.API,
            token=token,
            account_id=account_id,
            origin=str(path),
        )
    return None


def _cli(entry: "ProviderEntry", environment: "Environment") -> "CliInvocation | None":
    if not entry.cli_argv:
        return None
    binary = shutil.which(entry.cli_argv[0], path=environment.variables.get("PATH", ""))
    if binary is None:
        return None
    return CliInvocation(
        source=SourceKind.CLI,
        argv=(binary, *entry.cli_argv[1:]),
        origin="PATH",
    )


def _local(entry: "ProviderEntry", environment: "Environment") -> "LocalFilePath | None":
    if not entry.local_glob:
        return None
    newest: "tuple[float, Path] | None" = None
    for root in entry.local_roots:
        base = environment.home / root
        if not base.is_dir():
            continue
        for path in base.glob(entry.local_glob):
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if path.is_file() and (newest is None or mtime > newest[0]):
                newest = (mtime, path)
    if newest is None:
        return None
    return LocalFilePath(source=SourceKind.LOCAL, path=newest[1], origin=str(newest[1]))


def workspace_id(
    provider: "ProviderId",
    provider_config: "ProviderConfig",
    environment: "Environment",
) -> "str | None":
    if provider_config.workspace_id and provider_config.workspace_id.strip():
        return provider_config.workspace_id.strip()
    return environment.get(WORKSPACE_ENV.get(provider, ()))


def credential_path(credential_file: "CredentialFile", environment: "Environment") -> "Path":
    if credential_file.dir_env:
        override = environment.get([credential_file.dir_env])
        if override:
            return Path(override).expanduser() / Path(credential_file.relative_path).name
    return environment.home / credential_file.relative_path


def _from_files(
    files: "tuple[CredentialFile, ...]",
    environment: "Environment",
) -> "tuple[str, str | None, Path] | None":
    for credential_file in files:
        path = credential_path(credential_file, environment)
        if not path.is_file():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("credential_file_unreadable", path=str(path))
            continue

        token = _first_string(data, credential_file.token_keys)
        if token is None:
            logger.debug("credential_file_without_token", path=str(path))
            continue
        return token, _first_string(data, credential_file.account_id_keys), path
    return None


def _first_string(data: "Any", key_paths: "tuple[tuple[str, ...], ...]") -> "str | None":
    for key_path in key_paths:
        node = data
        for key in key_path:
            if not isinstance(node, dict):
                node = None
                break
            node = node.get(key)
        if isinstance(node, str) and node.strip():
            return node.strip()
    return None


def _looks_like_cookie(header: "str") -> "bool":
    for part in header.split(";"):
        name, sep, _ = part.partition("=")
        if sep and name.strip():
            return True
    return False

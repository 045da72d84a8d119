import pytest

from fuelcheck.catalog import CATALOG
from fuelcheck.errors import FetchError
from fuelcheck.models import ProviderId, SourceKind
from fuelcheck.provider import codex, factory
from fuelcheck.provider.registry import FETCHERS, fetcher_for


class TestFetcherFor:
    def test_registered_pair(self) -> "None":
        assert fetcher_for(ProviderId.CODEX, SourceKind.OAUTH) is codex.fetch_oauth
        assert fetcher_for(ProviderId.FACTORY, SourceKind.API) is factory.fetch_usage

    def test_every_registered_source_is_allowed(self) -> "None":
        for provider, source in FETCHERS:
            assert source in CATALOG[provider].allowed

    @pytest.mark.parametrize(
        "provider,source",
        [
            (ProviderId.CODEX, SourceKind.CLI),
            (ProviderId.CLAUDE, SourceKind.CLI),
            (ProviderId.CURSOR, SourceKind.API),
        ],
    )
    def test_unimplemented_pair(self, provider: "ProviderId", source: "SourceKind") -> "None":
        with pytest.raises(FetchError) as excinfo:
            fetcher_for(provider, source)
        assert excinfo.value.kind == "unsupported_operation"

    def test_override_table(self) -> "None":
        async def fake(credential: "object", context: "object") -> "None":
            return None

        table = {(ProviderId.AMP, SourceKind.WEB): fake}
        assert fetcher_for(ProviderId.AMP, SourceKind.WEB, table) is fake  # type: ignore[arg-type]
        with pytest.raises(FetchError):
            fetcher_for(ProviderId.CODEX, SourceKind.OAUTH, {})

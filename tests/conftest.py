from __future__ import annotations

from pathlib import Path

import pytest

from symserver.common.settings import SymbolProxySettings
from tests.utils.fakes import FakeClock, FakeUpstream


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_settings(tmp_path: Path):
    def _make(**overrides) -> SymbolProxySettings:
        values = {
            "s3_bucket": "symbols",
            "cache_directory": tmp_path / "cache",
            "hit_ttl_seconds": 3600,
            "miss_ttl_seconds": 60,
            "max_cache_entries": 400,
            "app_aliases": ["slack"],
            "path_prefix": "",
        }
        values.update(overrides)
        return SymbolProxySettings(**values)

    return _make

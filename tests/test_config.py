import io
from datetime import timedelta

import pytest
from pydantic import ValidationError

from slkcache import cli
from slkcache.config import Settings
from slkcache.resolver import ResolvePolicy


def test_defaults(monkeypatch):
    for name in ("SLK_PAGE_SIZE", "SLK_CACHE_TTL", "SLK_PARTIAL_TTL", "SLK_RESOLVE_POLICY"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.cache_ttl == timedelta(days=7)
    assert settings.partial_ttl == timedelta(days=1)
    assert settings.page_size == 200
    assert settings.page_delay == 1.0
    assert settings.resolve_policy is ResolvePolicy.TRANSPARENT_FETCH
    assert settings.cache_dir.parts[-3:] == (".config", "slack-cli", "cache")


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("SLK_CACHE_DIR", str(tmp_path))
    monkeypatch.setenv("SLK_PAGE_SIZE", "50")
    monkeypatch.setenv("SLK_CACHE_TTL", "7200")
    monkeypatch.setenv("SLK_PARTIAL_TTL", "3600")
    monkeypatch.setenv("SLK_RESOLVE_POLICY", "explicit_refresh")
    monkeypatch.setenv("SLACK_USER_TOKEN", "xoxp-env")

    settings = Settings(_env_file=None)

    assert settings.cache_dir == tmp_path
    assert settings.page_size == 50
    assert settings.cache_ttl == timedelta(hours=2)
    assert settings.resolve_policy is ResolvePolicy.EXPLICIT_REFRESH
    assert settings.user_token == "xoxp-env"


def test_partial_ttl_cannot_exceed_cache_ttl():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, cache_ttl=timedelta(hours=1), partial_ttl=timedelta(days=1))


def test_page_size_bounds():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, page_size=0)


def test_build_store_uses_configured_values(tmp_path):
    settings = Settings(
        _env_file=None,
        cache_dir=tmp_path,
        cache_ttl=timedelta(days=2),
        partial_ttl=timedelta(hours=6),
    )

    store = settings.build_store()

    assert store.base_path == tmp_path
    assert store.ttl == timedelta(days=2)
    assert store.partial_ttl == timedelta(hours=6)


def test_ttls_accept_seconds_and_iso_durations(monkeypatch):
    monkeypatch.setenv("SLK_CACHE_TTL", "PT2H")
    monkeypatch.setenv("SLK_PARTIAL_TTL", "90.5")

    settings = Settings(_env_file=None)

    assert settings.cache_ttl == timedelta(hours=2)
    assert settings.partial_ttl == timedelta(seconds=90.5)


def test_cli_runs_with_ttls_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("SLK_CACHE_DIR", str(tmp_path))
    monkeypatch.setenv("SLK_CACHE_TTL", "7200")
    monkeypatch.setenv("SLK_PARTIAL_TTL", "3600")
    monkeypatch.chdir(tmp_path)
    out, err = io.StringIO(), io.StringIO()

    code = cli.main(["status"], out=out, err=err)

    assert code == 0
    assert "invalid configuration" not in err.getvalue()
    assert "channels: not cached" in out.getvalue()

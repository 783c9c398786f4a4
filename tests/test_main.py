"""
Tests for process configuration and the command line entry point.
"""

import pytest

from listing_cache.main import (
    CacheConfig,
    ListingCache,
    build_config,
    load_env_file,
    main,
    parse_args,
    parse_items,
)
from listing_cache.storage.listing_store import MemoryListingStore
from listing_cache.storage.models import Precedence

ENV_VARS = (
    "BPTF_USER_TOKEN",
    "BPTF_USER_KEY",
    "ITEMS",
    "LISTING_STORE",
    "DATABASE_URL",
    "LISTING_PRECEDENCE",
    "SNAPSHOT_POLL_INTERVAL_SECONDS",
    "SNAPSHOT_COOLDOWN_SECONDS",
    "SWEEP_INTERVAL_SECONDS",
    "DASHBOARD_ENABLED",
    "DASHBOARD_HOST",
    "DASHBOARD_PORT",
    "LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    """Unset config variables; anything load_env_file sets is undone after the test."""
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


class TestCacheConfig:

    def test_defaults(self, clean_env):
        config = CacheConfig.from_env()

        assert config.store_backend == "memory"
        assert config.precedence == Precedence.LAST_WRITE_WINS
        assert config.items == []
        assert config.snapshot_cooldown_seconds == 60.0
        assert config.dashboard_enabled is False

    def test_reads_environment(self, clean_env):
        clean_env.setenv("BPTF_USER_TOKEN", "tok")
        clean_env.setenv("ITEMS", "Mann Co. Supply Crate Key, Tour of Duty Ticket,")
        clean_env.setenv("LISTING_STORE", "Postgres")
        clean_env.setenv("DATABASE_URL", "postgresql://localhost/listings")
        clean_env.setenv("LISTING_PRECEDENCE", "newest_bump_wins")
        clean_env.setenv("DASHBOARD_ENABLED", "yes")
        clean_env.setenv("DASHBOARD_PORT", "9090")

        config = CacheConfig.from_env()

        assert config.user_token == "tok"
        assert config.items == ["Mann Co. Supply Crate Key", "Tour of Duty Ticket"]
        assert config.store_backend == "postgres"
        assert config.precedence == Precedence.NEWEST_BUMP_WINS
        assert config.dashboard_enabled is True
        assert config.dashboard_port == 9090

    def test_user_key_fallback(self, clean_env):
        clean_env.setenv("BPTF_USER_KEY", "legacy")

        assert CacheConfig.from_env().user_token == "legacy"

    def test_invalid_precedence_raises(self, clean_env):
        clean_env.setenv("LISTING_PRECEDENCE", "random")

        with pytest.raises(ValueError):
            CacheConfig.from_env()

    def test_validate_snapshot_mode_needs_token_and_items(self):
        problems = CacheConfig().validate("snapshots")

        assert any("BPTF_USER_TOKEN" in p for p in problems)
        assert any("ITEMS" in p for p in problems)

    def test_validate_stream_mode_needs_nothing(self):
        assert CacheConfig().validate("stream") == []

    def test_validate_postgres_needs_url(self):
        config = CacheConfig(store_backend="postgres")

        assert config.validate("stream") == ["DATABASE_URL is required for the postgres listing store"]

    def test_validate_unknown_backend(self):
        assert CacheConfig(store_backend="redis").validate("stream")

    def test_ingestion_config_by_mode(self):
        config = CacheConfig(items=["Key"], sweep_interval_seconds=30)

        stream_only = config.ingestion_config("stream")
        snapshots_only = config.ingestion_config("snapshots")

        assert stream_only.stream_enabled and not stream_only.snapshot_enabled
        assert snapshots_only.snapshot_enabled and not snapshots_only.stream_enabled
        assert stream_only.items == ["Key"]
        assert stream_only.sweep_interval == 30


class TestCommandLine:

    def test_parse_args_defaults(self):
        args = parse_args([])

        assert args.mode == "all"
        assert args.env_file == ".env"
        assert args.dashboard is False

    def test_overrides_applied(self, clean_env):
        args = parse_args(["--mode", "stream", "--items", "A,B", "--dashboard", "--log-level", "DEBUG"])

        config = build_config(args)

        assert config.items == ["A", "B"]
        assert config.dashboard_enabled is True
        assert config.log_level == "DEBUG"

    def test_parse_items(self):
        assert parse_items(" a , ,b ") == ["a", "b"]

    def test_invalid_config_exits_nonzero(self, clean_env, tmp_path):
        missing_env = tmp_path / "absent.env"

        assert main(["--mode", "snapshots", "--env-file", str(missing_env)]) == 1


class TestEnvFile:

    def test_loads_values(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text('# comment\nBPTF_USER_TOKEN="from-file"\nITEMS=Key\n\n')

        load_env_file(str(env_file))

        config = CacheConfig.from_env()
        assert config.user_token == "from-file"
        assert config.items == ["Key"]

    def test_environment_wins_over_file(self, clean_env, tmp_path):
        clean_env.setenv("BPTF_USER_TOKEN", "from-env")
        env_file = tmp_path / ".env"
        env_file.write_text("BPTF_USER_TOKEN=from-file\n")

        load_env_file(str(env_file))

        assert CacheConfig.from_env().user_token == "from-env"

    def test_missing_file_is_ignored(self, tmp_path):
        load_env_file(str(tmp_path / "nope.env"))


class TestListingCache:

    @pytest.mark.asyncio
    async def test_memory_store_created(self):
        app = ListingCache(CacheConfig(precedence=Precedence.NEWEST_BUMP_WINS))

        store = await app.create_store()

        assert isinstance(store, MemoryListingStore)
        assert store.precedence == Precedence.NEWEST_BUMP_WINS

    @pytest.mark.asyncio
    async def test_stop_without_run(self):
        app = ListingCache(CacheConfig())

        await app.stop()

        assert app.service is None
        assert app.store is None

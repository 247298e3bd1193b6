"""
Unit tests for static (environment) and dynamic (YAML) configuration.
"""

import pytest

from clerk.core.config.config import Config, Environment
from clerk.core.config.manager import ConfigManager


@pytest.fixture
def manager():
    ConfigManager.reset()
    yield ConfigManager
    ConfigManager.reset()


@pytest.fixture
def config_dir(tmp_path):
    (tmp_path / "a_auth.yaml").write_text(
        "auth:\n"
        "  lockout:\n"
        "    permanent_after: 20\n"
        "  geo:\n"
        "    enabled: true\n"
        "    timeout_seconds: 3.0\n",
        encoding="utf-8",
    )
    (tmp_path / "b_site.yaml").write_text(
        "auth:\n"
        "  geo:\n"
        "    enabled: false\n"
        "sync:\n"
        "  auto_sync: null\n",
        encoding="utf-8",
    )
    (tmp_path / "c_list.yaml").write_text("- not a mapping\n", encoding="utf-8")
    return tmp_path


class TestConfigManager:
    async def test_later_files_deep_merge(self, manager, config_dir):
        await manager.initialize(config_dir)

        assert manager.get("auth.lockout.permanent_after") == 20
        assert manager.get("auth.geo.enabled") is False
        assert manager.get("auth.geo.timeout_seconds") == 3.0
        assert manager.get_metrics()["yaml_files_loaded"] == 2

    async def test_missing_and_null_keys_use_default(self, manager, config_dir):
        await manager.initialize(config_dir)

        assert manager.get("sync.auto_sync", "10m") == "10m"
        assert manager.get("auth.lockout.nope", 5) == 5
        assert manager.get("auth.lockout.permanent_after.deeper", "x") == "x"

    async def test_overrides_and_clear(self, manager, config_dir):
        await manager.initialize(config_dir)

        manager.set_override("auth.lockout.permanent_after", 3)
        manager.set_override("cache.memo_ttl_seconds", 0.1)

        assert manager.get("auth.lockout.permanent_after") == 3
        assert manager.get("cache.memo_ttl_seconds") == 0.1

        manager.clear_overrides()

        assert manager.get("auth.lockout.permanent_after") == 20
        assert manager.get("cache.memo_ttl_seconds") is None

    def test_missing_directory(self, manager, tmp_path):
        manager._load_defaults(tmp_path / "absent")

        assert manager.get("auth.bcrypt_rounds", 12) == 12
        assert manager.get_metrics()["misses"] == 1


class TestStaticConfig:
    def test_safe_int_bounds(self, monkeypatch):
        monkeypatch.setenv("CLERK_TEST_INT", "500")
        assert Config._safe_int("CLERK_TEST_INT", 20, min_val=1, max_val=200) == 20

        monkeypatch.setenv("CLERK_TEST_INT", "abc")
        assert Config._safe_int("CLERK_TEST_INT", 20) == 20

        monkeypatch.setenv("CLERK_TEST_INT", "42")
        assert Config._safe_int("CLERK_TEST_INT", 20, min_val=1, max_val=200) == 42

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("yes", True), ("ON", True), ("0", False), (" false ", False), ("maybe", None)],
    )
    def test_safe_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("CLERK_TEST_BOOL", raw)

        assert Config._safe_bool("CLERK_TEST_BOOL", None) is expected

    def test_unknown_environment_falls_back(self):
        assert Environment.from_string("Staging") is Environment.STAGING
        assert Environment.from_string("moon") is Environment.DEVELOPMENT

    def test_summary_hides_credentials(self):
        summary = Config.get_config_summary()

        assert summary["database_url_set"] is True
        assert "database_url" not in summary

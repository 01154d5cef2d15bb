"""Tests for proxyguard.core.config: settings loading and overrides."""

from __future__ import annotations

import tempfile

from conftest import build_layout, var
from proxyguard.core.config import Settings, get_settings
from proxyguard.core.types import ValidationOptions
from proxyguard.validation.orchestrator import compare_layouts


class TestSettings:
    """Verify settings defaults and environment overrides."""

    def test_default_app_env(self):
        s = Settings()
        assert s.app_env == "development"

    def test_default_log_level(self):
        assert Settings().log_level == "INFO"

    def test_manifest_defaults(self, monkeypatch):
        monkeypatch.delenv("PROXYGUARD_MANIFEST_DIR")
        monkeypatch.delenv("PROXYGUARD_DEV_TMP_DIR")
        monkeypatch.delenv("PROXYGUARD_LOCK_TIMEOUT_SECONDS")
        s = Settings()
        assert s.manifest_dir == ".proxyguard"
        assert s.dev_tmp_dir == tempfile.gettempdir()
        assert s.lock_timeout_seconds == 60.0
        assert s.lock_poll_interval > 0

    def test_storage_check_defaults(self):
        s = Settings()
        assert s.strict_renames is False
        assert s.unsafe_allow_custom_types is False

    def test_build_info_dirs_default(self):
        dirs = Settings().build_info_dirs.split(",")
        assert "artifacts/build-info" in dirs
        assert "out/build-info" in dirs

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("PROXYGUARD_APP_ENV", "production")
        monkeypatch.setenv("PROXYGUARD_STRICT_RENAMES", "true")
        monkeypatch.setenv("PROXYGUARD_LOCK_TIMEOUT_SECONDS", "2.5")
        s = Settings()
        assert s.app_env == "production"
        assert s.strict_renames is True
        assert s.lock_timeout_seconds == 2.5

    def test_env_is_case_insensitive(self, monkeypatch):
        monkeypatch.setenv("proxyguard_log_level", "DEBUG")
        assert Settings().log_level == "DEBUG"


class TestGetSettings:
    def test_cached_singleton(self):
        assert get_settings() is get_settings()

    def test_cache_clear_picks_up_env(self, monkeypatch, tmp_path):
        before = get_settings()
        monkeypatch.setenv("PROXYGUARD_MANIFEST_DIR", str(tmp_path / "other"))
        get_settings.cache_clear()
        after = get_settings()
        assert after is not before
        assert after.manifest_dir == str(tmp_path / "other")


class TestValidationOptionDefaults:
    """Storage-check settings become the defaults of ValidationOptions."""

    def test_defaults_off(self):
        opts = ValidationOptions()
        assert opts.strict_renames is False
        assert opts.unsafe_allow_custom_types is False

    def test_defaults_follow_settings(self, monkeypatch):
        monkeypatch.setenv("PROXYGUARD_STRICT_RENAMES", "true")
        monkeypatch.setenv("PROXYGUARD_UNSAFE_ALLOW_CUSTOM_TYPES", "1")
        get_settings.cache_clear()

        opts = ValidationOptions()
        assert opts.strict_renames is True
        assert opts.unsafe_allow_custom_types is True

    def test_explicit_value_wins(self, monkeypatch):
        monkeypatch.setenv("PROXYGUARD_STRICT_RENAMES", "true")
        get_settings.cache_clear()
        assert ValidationOptions(strict_renames=False).strict_renames is False

    def test_strict_renames_env_reaches_comparator(self, monkeypatch):
        old = build_layout([var("owner", "t_address", 0)])
        new = build_layout([var("admin", "t_address", 0)])
        assert compare_layouts(old, new).ok

        monkeypatch.setenv("PROXYGUARD_STRICT_RENAMES", "true")
        get_settings.cache_clear()
        report = compare_layouts(old, new)
        assert not report.ok
        assert report.errors[0].kind == "rename"

"""
Tests for tier configuration: the feature catalog YAML and env settings.
"""

import pytest

from stokreal.config.tier_features import (
    TierFeaturesConfig,
    get_tier_features_config,
    reset_tier_features_config,
)
from stokreal.config.tier_settings import TierSettings, get_tier_settings, reset_tier_settings


def _write_catalog(tmp_path, body: str) -> str:
    path = tmp_path / "tier_features.yml"
    path.write_text(body)
    return str(path)


VALID_CATALOG = """
version: "2.0.0"
default_tier: free
features:
  product_slot:
    description: Products
    reset_period: null
    tiers:
      free: {limit: 10, enabled: true}
      premium: {limit: null, enabled: true}
  reports:
    description: Reports
    reset_period: weekly
    tiers:
      premium: {limit: 5, enabled: true}
"""


class TestBundledCatalog:
    """The shipped tier_features.yml."""

    def test_loads(self, catalog_config):
        assert catalog_config.version == "1.0.0"
        assert catalog_config.default_tier == "free"
        assert catalog_config.tiers == ["free", "premium"]
        assert len(catalog_config.feature_names) == 15

    def test_free_limits(self, catalog_config):
        seeds = {seed.feature_name: seed for seed in catalog_config.definitions("free")}

        assert seeds["product_slot"].feature_limit == 50
        assert seeds["categories"].feature_limit == 20
        assert seeds["max_file_upload_size_mb"].feature_limit == 5
        assert seeds["analytics_access"].feature_enabled is False

    def test_premium_limits(self, catalog_config):
        seeds = {seed.feature_name: seed for seed in catalog_config.definitions("premium")}

        assert seeds["product_slot"].feature_limit is None
        assert seeds["data_retention_years"].feature_limit == 3
        assert all(seed.feature_enabled for seed in seeds.values())

    def test_reset_periods(self, catalog_config):
        assert catalog_config.features_with_reset("daily") == ["whatsapp_messages"]
        assert catalog_config.features_with_reset("monthly") == ["product_imports"]
        assert catalog_config.features_with_reset("weekly") == []
        assert catalog_config.reset_period("product_slot") is None

    def test_process_wide_instance_is_cached(self):
        first = get_tier_features_config()
        assert get_tier_features_config() is first

        reset_tier_features_config()
        assert get_tier_features_config() is not first


class TestCustomCatalog:

    def test_explicit_path(self, tmp_path):
        config = TierFeaturesConfig(_write_catalog(tmp_path, VALID_CATALOG))

        assert config.version == "2.0.0"
        assert config.features_with_reset("weekly") == ["reports"]
        assert [s.tier for s in config.definitions() if s.feature_name == "reports"] == ["premium"]

    def test_env_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TIER_FEATURES_CONFIG", _write_catalog(tmp_path, VALID_CATALOG))
        assert TierFeaturesConfig().version == "2.0.0"

    def test_reload(self, tmp_path):
        path = _write_catalog(tmp_path, VALID_CATALOG)
        config = TierFeaturesConfig(path)

        _write_catalog(tmp_path, VALID_CATALOG.replace('"2.0.0"', '"2.1.0"'))
        config.reload()

        assert config.version == "2.1.0"

    def test_invalid_reset_period(self, tmp_path):
        body = VALID_CATALOG.replace("reset_period: weekly", "reset_period: hourly")
        with pytest.raises(ValueError, match="reset_period"):
            TierFeaturesConfig(_write_catalog(tmp_path, body))

    @pytest.mark.parametrize("limit", ["-1", "2.5", "true", "lots"])
    def test_invalid_limit(self, tmp_path, limit):
        body = VALID_CATALOG.replace("{limit: 10,", "{limit: " + limit + ",")
        with pytest.raises(ValueError, match="invalid limit"):
            TierFeaturesConfig(_write_catalog(tmp_path, body))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            TierFeaturesConfig(str(tmp_path / "missing.yml"))


class TestTierSettings:
    """Environment-driven settings."""

    def test_defaults(self, monkeypatch):
        for name in (
            "ENABLE_TIER_SCHEDULER",
            "TIER_DOWNGRADE_BATCH_SIZE",
            "TIER_EXPIRATION_WARNING_DAYS",
            "TIER_USAGE_WARNING_THRESHOLD",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = TierSettings.from_env()

        assert settings.scheduler_enabled is True
        assert settings.downgrade_interval_seconds == 900
        assert settings.downgrade_batch_size == 200
        assert settings.expiration_warning_days == 7
        assert settings.usage_warning_threshold == 0.8

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("ENABLE_TIER_SCHEDULER", "false")
        monkeypatch.setenv("TIER_DOWNGRADE_BATCH_SIZE", "25")
        monkeypatch.setenv("TIER_USAGE_WARNING_THRESHOLD", "0.9")

        settings = TierSettings.from_env()

        assert settings.scheduler_enabled is False
        assert settings.downgrade_batch_size == 25
        assert settings.usage_warning_threshold == 0.9

    def test_invalid_values_fall_back(self, monkeypatch):
        monkeypatch.setenv("TIER_DOWNGRADE_BATCH_SIZE", "many")
        monkeypatch.setenv("TIER_USAGE_WARNING_THRESHOLD", "high")

        settings = TierSettings.from_env()

        assert settings.downgrade_batch_size == 200
        assert settings.usage_warning_threshold == 0.8

    def test_cached_until_reset(self, monkeypatch):
        monkeypatch.setenv("TIER_EXPIRATION_WARNING_DAYS", "3")
        assert get_tier_settings().expiration_warning_days == 3

        monkeypatch.setenv("TIER_EXPIRATION_WARNING_DAYS", "5")
        assert get_tier_settings().expiration_warning_days == 3

        reset_tier_settings()
        assert get_tier_settings().expiration_warning_days == 5

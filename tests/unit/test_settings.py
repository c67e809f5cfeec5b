"""
Unit tests for configuration loading.
"""

import numpy as np
import pytest

from clusterkit.config.settings_loader import ConfigManager, Settings, get_settings
from clusterkit.core import dbscan_cluster, hierarchical_cluster
from clusterkit.schemas.data_models import DBSCANOptions, HierarchicalOptions, LinkageCriterion
from clusterkit.utils.error_handling import ConfigurationError, ParameterValidationError


@pytest.mark.unit
class TestConfigManager:
    """Test suite for ConfigManager."""

    def test_singleton(self):
        assert ConfigManager() is ConfigManager()

    def test_repository_settings(self):
        """The bundled settings file matches the built-in defaults."""
        settings = get_settings()

        assert isinstance(settings, Settings)
        assert settings.hierarchical.linkage == "average"
        assert settings.dbscan.eps_quantile == 0.9
        assert settings.quality.num_bootstraps == 100
        assert settings.service.environment == "test"

    def test_env_substitution(self, settings_file, monkeypatch):
        path = settings_file('logging:\n  level: "${CLUSTERKIT_TEST_LEVEL:warning}"\n')

        monkeypatch.delenv("CLUSTERKIT_TEST_LEVEL", raising=False)
        assert ConfigManager.reload_config(str(path)).logging.level == "WARNING"

        monkeypatch.setenv("CLUSTERKIT_TEST_LEVEL", "debug")
        assert ConfigManager.reload_config(str(path)).logging.level == "DEBUG"

    def test_env_var_path(self, settings_file, monkeypatch):
        """CLUSTERKIT_CONFIG points at an alternative file."""
        path = settings_file("hierarchical:\n  linkage: ward\n")
        monkeypatch.setenv("CLUSTERKIT_CONFIG", str(path))

        assert get_settings().hierarchical.linkage == "ward"
        assert get_settings().dbscan.eps_quantile == 0.9

    def test_option_defaults_follow_settings(self, settings_file, monkeypatch):
        path = settings_file("hierarchical:\n  linkage: ward\ndbscan:\n  eps_quantile: 0.5\n")
        monkeypatch.setenv("CLUSTERKIT_CONFIG", str(path))

        assert HierarchicalOptions().linkage is LinkageCriterion.WARD
        assert DBSCANOptions().eps_quantile == 0.5

    def test_invalid_settings_default_rejected(self, settings_file, monkeypatch):
        """Option defaults read from settings are validated like explicit values."""
        path = settings_file("hierarchical:\n  linkage: wrd\ndbscan:\n  distance_metric: hamming\n")
        monkeypatch.setenv("CLUSTERKIT_CONFIG", str(path))

        with pytest.raises(ParameterValidationError) as exc_info:
            hierarchical_cluster(np.eye(3))
        assert "linkage" in exc_info.value.details["errors"]

        with pytest.raises(ParameterValidationError):
            dbscan_cluster(np.eye(3), eps=1.0, min_pts=2)

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigManager.reload_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, settings_file):
        path = settings_file("hierarchical: [unclosed\n")
        with pytest.raises(ConfigurationError):
            ConfigManager.reload_config(str(path))

    def test_invalid_value(self, settings_file):
        path = settings_file("dbscan:\n  eps_quantile: 2.0\n")
        with pytest.raises(ConfigurationError):
            ConfigManager.reload_config(str(path))

    def test_non_mapping_root(self, settings_file):
        path = settings_file("- just\n- a list\n")
        with pytest.raises(ConfigurationError):
            ConfigManager.reload_config(str(path))

    def test_empty_file_uses_defaults(self, settings_file):
        settings = ConfigManager.reload_config(str(settings_file("")))
        assert settings.hierarchical.max_points == 5000

    def test_unknown_log_level(self, settings_file):
        path = settings_file("logging:\n  level: LOUD\n")
        with pytest.raises(ConfigurationError):
            ConfigManager.reload_config(str(path))

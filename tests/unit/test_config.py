"""Tests for configuration loading."""

import pytest

from zerup_guard.config import DEFAULT_CONFIG, GuardConfig, load_config, load_config_from_dict
from zerup_guard.config.loader import CONFIG_ENV_VAR, find_config
from zerup_guard.core.states import SessionMode
from zerup_guard.exceptions import ConfigFileNotFoundError, ConfigValidationError


class TestDefaults:
    """Tests for the built-in defaults."""

    def test_defaults_validate(self):
        config = load_config_from_dict({})
        assert config.paths.backup_root == "/var/backups/zerup"
        assert config.paths.restore_point_root == "/var/backups/zerup/rollback"
        assert config.validation.hook_timeout_seconds == 10.0
        assert config.backup.retention_days == 30
        assert config.backup.dir_mode == 0o700
        assert config.session.mode is SessionMode.INTERACTIVE

    def test_model_defaults_match_dict(self):
        assert GuardConfig().model_dump()["lock"] == DEFAULT_CONFIG["lock"]


class TestLoadFromDict:
    """Tests for merging overrides."""

    def test_deep_merge_keeps_siblings(self):
        config = load_config_from_dict({"validation": {"hook_timeout_seconds": 3}})
        assert config.validation.hook_timeout_seconds == 3.0
        assert config.validation.health_check_timeout_seconds == 5.0

    def test_negative_retention_rejected(self):
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"backup": {"retention_days": -1}})

    def test_unknown_mode_rejected(self):
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"session": {"mode": "yolo"}})

    def test_octal_dir_mode_string(self):
        config = load_config_from_dict({"backup": {"dir_mode": "0o750"}})
        assert config.backup.dir_mode == 0o750

    def test_log_level_normalized(self):
        assert load_config_from_dict({"logging": {"level": "debug"}}).logging.level == "DEBUG"

    def test_bad_log_level_rejected(self):
        with pytest.raises(ConfigValidationError):
            load_config_from_dict({"logging": {"level": "LOUD"}})

    def test_restore_order(self):
        config = load_config_from_dict(
            {"restore_points": {"restore_order": ["ufw-rules", "sshd_config"]}}
        )
        assert config.restore_points.restore_order == ["ufw-rules", "sshd_config"]


class TestLoadFromFile:
    """Tests for loading YAML files."""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "guard.yaml"
        path.write_text(
            "paths:\n"
            "  backup_root: /srv/backups\n"
            "session:\n"
            "  mode: dry_run\n"
        )
        config = load_config(str(path))
        assert config.paths.backup_root == "/srv/backups"
        assert config.session.mode is SessionMode.DRY_RUN

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigFileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "guard.yaml"
        path.write_text("paths: [unclosed\n")
        with pytest.raises(ConfigValidationError):
            load_config(str(path))

    def test_non_mapping_yaml(self, tmp_path):
        path = tmp_path / "guard.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigValidationError):
            load_config(str(path))

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "guard.yaml"
        path.write_text("")
        assert load_config(str(path)).lock.scope == "host"


class TestFindConfig:
    """Tests for config discovery."""

    def test_explicit_path_wins(self, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, "/from/env.yaml")
        assert find_config("/explicit.yaml") == "/explicit.yaml"

    def test_env_var(self, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, "/from/env.yaml")
        assert find_config() == "/from/env.yaml"

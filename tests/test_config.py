"""Unit tests for autosetup.config — AutoSetupConfig and WidgetOptions."""

from __future__ import annotations

from pathlib import Path

import pytest

from autosetup.config import AutoSetupConfig, AutoSetupConfigError, WidgetOptions
from autosetup.models import (
    DEFAULT_ACTION_DELAY_MS,
    DEFAULT_API_BASE,
    DEFAULT_ELEMENT_TIMEOUT_MS,
    DEFAULT_VIEWPORT,
    SYNC_DEBOUNCE_MS,
)


# ---------------------------------------------------------------------------
# 1. Default values
# ---------------------------------------------------------------------------

class TestAutoSetupConfigDefaults:
    """AutoSetupConfig should have sensible defaults for every field."""

    def test_default_api_base_matches_models_constant(self):
        assert AutoSetupConfig().api_base == DEFAULT_API_BASE

    def test_default_credentials_are_empty(self):
        cfg = AutoSetupConfig()
        assert cfg.api_key == ""
        assert cfg.config_id == ""
        assert cfg.client_id is None

    def test_default_viewport_matches_models_constant(self):
        assert AutoSetupConfig().viewport == DEFAULT_VIEWPORT

    def test_default_engine_timings(self):
        cfg = AutoSetupConfig()
        assert cfg.element_timeout_ms == DEFAULT_ELEMENT_TIMEOUT_MS
        assert cfg.action_delay_ms == DEFAULT_ACTION_DELAY_MS
        assert cfg.sync_debounce_ms == SYNC_DEBOUNCE_MS

    def test_api_key_not_in_repr(self):
        cfg = AutoSetupConfig(api_key="secret-key-value")
        assert "secret-key-value" not in repr(cfg)


# ---------------------------------------------------------------------------
# 2. from_file() — happy path
# ---------------------------------------------------------------------------

class TestFromFile:
    """AutoSetupConfig.from_file() should load and parse valid YAML."""

    def test_loads_project_config(self, tmp_project_dir: Path):
        cfg = AutoSetupConfig.from_file(tmp_project_dir / "config.yaml")

        assert cfg.config_id == "cfg-1"
        assert cfg.api_key == "key-1"
        assert cfg.headless is True
        assert cfg.viewport == (1440, 900)
        assert cfg.project_dir == tmp_project_dir

    def test_trailing_slash_stripped_from_api_base(self, tmp_project_dir: Path):
        cfg = AutoSetupConfig.from_file(tmp_project_dir / "config.yaml")
        assert cfg.api_base == "http://localhost:8787/functions/v1"

    def test_cache_path_defaults_inside_project_dir(self, tmp_project_dir: Path):
        cfg = AutoSetupConfig.from_file(tmp_project_dir / "config.yaml")
        assert cfg.cache_path == tmp_project_dir / "cache.json"

    def test_custom_cache_path_is_relative_to_project_dir(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("cache_path: state/progress.json\n", encoding="utf-8")
        cfg = AutoSetupConfig.from_file(config_file)
        assert cfg.cache_path == tmp_path / "state" / "progress.json"

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("", encoding="utf-8")
        cfg = AutoSetupConfig.from_file(config_file)
        assert cfg.api_base == DEFAULT_API_BASE
        assert cfg.widget == {}


# ---------------------------------------------------------------------------
# 3. from_file() — error paths
# ---------------------------------------------------------------------------

class TestFromFileErrors:

    def test_missing_file_raises(self, tmp_path: Path):
        with pytest.raises(AutoSetupConfigError, match="Config file not found"):
            AutoSetupConfig.from_file(tmp_path / "nope.yaml")

    def test_non_mapping_raises(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(AutoSetupConfigError, match="mapping"):
            AutoSetupConfig.from_file(config_file)

    def test_non_integer_timing_raises(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("element_timeout_ms: soon\n", encoding="utf-8")
        with pytest.raises(AutoSetupConfigError, match="element_timeout_ms"):
            AutoSetupConfig.from_file(config_file)

    def test_non_integer_viewport_raises(self, tmp_path: Path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("viewport:\n  width: wide\n", encoding="utf-8")
        with pytest.raises(AutoSetupConfigError, match="viewport.width"):
            AutoSetupConfig.from_file(config_file)


# ---------------------------------------------------------------------------
# 4. WidgetOptions
# ---------------------------------------------------------------------------

class TestWidgetOptions:
    """WidgetOptions accepts host-page camelCase keys and snake_case keys."""

    def test_from_camel_case_keys(self):
        options = WidgetOptions.from_dict(
            {
                "configId": "cfg-1",
                "apiKey": "key-1",
                "position": "tooltip",
                "autoStart": False,
                "actionDelay": 50,
                "allowedRoutes": ["/app/*", ""],
            }
        )
        assert options.config_id == "cfg-1"
        assert options.api_key == "key-1"
        assert options.position == "tooltip"
        assert options.auto_start is False
        assert options.auto_execute_actions is True
        assert options.action_delay_ms == 50
        assert options.allowed_routes == ["/app/*"]

    def test_from_snake_case_keys(self):
        options = WidgetOptions.from_dict({"config_id": "cfg-1", "api_key": "key-1", "client_id": "c-9"})
        assert options.client_id == "c-9"
        assert options.action_delay_ms == DEFAULT_ACTION_DELAY_MS

    def test_missing_credentials_raise(self):
        with pytest.raises(AutoSetupConfigError, match="configId and apiKey"):
            WidgetOptions.from_dict({"configId": "cfg-1"})

    def test_unknown_position_raises(self):
        with pytest.raises(AutoSetupConfigError, match="Unknown widget position"):
            WidgetOptions.from_dict({"configId": "cfg-1", "apiKey": "k", "position": "sidebar"})

    def test_negative_delay_raises(self):
        with pytest.raises(AutoSetupConfigError, match="actionDelay"):
            WidgetOptions.from_dict({"configId": "cfg-1", "apiKey": "k", "actionDelay": -1})

    @pytest.mark.parametrize("delay", ["fast", [100], "1.5"])
    def test_non_integer_delay_raises_config_error(self, delay):
        with pytest.raises(AutoSetupConfigError, match="actionDelay must be a whole number"):
            WidgetOptions.from_dict({"configId": "cfg-1", "apiKey": "k", "actionDelay": delay})

    def test_numeric_string_delay_is_accepted(self):
        options = WidgetOptions.from_dict({"configId": "cfg-1", "apiKey": "k", "actionDelay": "250"})
        assert options.action_delay_ms == 250

    def test_api_key_not_in_repr(self):
        options = WidgetOptions(config_id="cfg-1", api_key="very-secret")
        assert "very-secret" not in repr(options)


# ---------------------------------------------------------------------------
# 5. AutoSetupConfig.widget_options()
# ---------------------------------------------------------------------------

class TestWidgetOptionsFromConfig:

    def test_widget_block_is_applied(self, tmp_project_dir: Path):
        cfg = AutoSetupConfig.from_file(tmp_project_dir / "config.yaml")
        options = cfg.widget_options()
        assert options.config_id == "cfg-1"
        assert options.api_key == "key-1"
        assert options.position == "modal"
        assert options.auto_execute_actions is False

    def test_overrides_beat_widget_block(self, tmp_project_dir: Path):
        cfg = AutoSetupConfig.from_file(tmp_project_dir / "config.yaml")
        options = cfg.widget_options(position="tooltip", auto_execute_actions=True)
        assert options.position == "tooltip"
        assert options.auto_execute_actions is True

    def test_none_overrides_are_ignored(self, tmp_project_dir: Path):
        cfg = AutoSetupConfig.from_file(tmp_project_dir / "config.yaml")
        options = cfg.widget_options(config_id=None)
        assert options.config_id == "cfg-1"

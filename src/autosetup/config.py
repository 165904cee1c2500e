"""AutoSetup configuration management."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from autosetup.models import (
    DEFAULT_ACTION_DELAY_MS,
    DEFAULT_API_BASE,
    DEFAULT_ELEMENT_TIMEOUT_MS,
    DEFAULT_VIEWPORT,
    DEFAULT_WIDGET_POSITION,
    SYNC_DEBOUNCE_MS,
    WIDGET_POSITIONS,
)


class AutoSetupConfigError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise AutoSetupConfigError(
            f"{name} must be a whole number, got {value!r}\n\nTo fix: set {name} to an integer"
        )


@dataclass
class WidgetOptions:
    """Embed parameters a host page passes when it initializes the widget."""

    config_id: str = ""
    # repr=False keeps the key out of logs and tracebacks that print options
    api_key: str = field(default="", repr=False)
    position: str = DEFAULT_WIDGET_POSITION
    auto_start: bool = True
    auto_execute_actions: bool = True
    action_delay_ms: int = DEFAULT_ACTION_DELAY_MS
    allowed_routes: list[str] = field(default_factory=list)
    client_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WidgetOptions:
        """Build from host-page keys (``configId``, ``autoStart``, ...) or snake_case keys."""
        options = cls(
            config_id=str(_pick(data, "configId", "config_id", default="")),
            api_key=str(_pick(data, "apiKey", "api_key", default="")),
            position=str(_pick(data, "position", default=DEFAULT_WIDGET_POSITION)),
            auto_start=bool(_pick(data, "autoStart", "auto_start", default=True)),
            auto_execute_actions=bool(_pick(data, "autoExecuteActions", "auto_execute_actions", default=True)),
            action_delay_ms=_as_int(
                _pick(data, "actionDelay", "action_delay_ms", default=DEFAULT_ACTION_DELAY_MS), "actionDelay"
            ),
            allowed_routes=[str(r) for r in _pick(data, "allowedRoutes", "allowed_routes", default=[]) if r],
            client_id=_pick(data, "clientId", "client_id"),
        )
        options.validate()
        return options

    def validate(self) -> None:
        if not self.config_id or not self.api_key:
            raise AutoSetupConfigError(
                "Widget needs both configId and apiKey\n\n"
                "To fix: pass configId/apiKey in the embed options or set config_id/api_key in .autosetup/config.yaml"
            )
        if self.position not in WIDGET_POSITIONS:
            raise AutoSetupConfigError(
                f"Unknown widget position: {self.position!r}\n\n"
                f"To fix: use one of {', '.join(WIDGET_POSITIONS)}"
            )
        if self.action_delay_ms < 0:
            raise AutoSetupConfigError(f"actionDelay must be >= 0, got {self.action_delay_ms}")


@dataclass
class AutoSetupConfig:
    """Configuration for an AutoSetup project directory."""

    # API
    api_base: str = DEFAULT_API_BASE
    api_key: str = field(default="", repr=False)
    config_id: str = ""
    client_id: str | None = None

    # Paths
    project_dir: Path = field(default_factory=lambda: Path(".autosetup"))
    cache_path: Path = field(default_factory=lambda: Path(".autosetup/cache.json"))

    # Browser
    headless: bool = True
    viewport: tuple[int, int] = DEFAULT_VIEWPORT

    # Engine
    element_timeout_ms: int = DEFAULT_ELEMENT_TIMEOUT_MS
    action_delay_ms: int = DEFAULT_ACTION_DELAY_MS
    sync_debounce_ms: int = SYNC_DEBOUNCE_MS
    widget: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_file(cls, config_path: Path) -> AutoSetupConfig:
        """Load config from a YAML file."""
        if not config_path.exists():
            raise AutoSetupConfigError(
                f"Config file not found: {config_path}\n\nTo fix: create .autosetup/config.yaml"
            )
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise AutoSetupConfigError(f"Config file must be a YAML mapping: {config_path}")
        return cls._from_dict(data, config_path.parent)

    @classmethod
    def _from_dict(cls, data: dict[str, Any], project_dir: Path) -> AutoSetupConfig:
        """Create config from a dictionary."""
        config = cls()
        config.project_dir = project_dir

        if "cache_path" in data:
            config.cache_path = project_dir / data["cache_path"]
        else:
            config.cache_path = project_dir / "cache.json"

        if "api_base" in data:
            config.api_base = str(data["api_base"]).rstrip("/")
        if "api_key" in data:
            config.api_key = str(data["api_key"])
        if "config_id" in data:
            config.config_id = str(data["config_id"])
        if "client_id" in data:
            config.client_id = str(data["client_id"])
        if "headless" in data:
            config.headless = bool(data["headless"])
        if "viewport" in data:
            vp = data["viewport"]
            if isinstance(vp, dict):
                config.viewport = (
                    _as_int(vp.get("width", DEFAULT_VIEWPORT[0]), "viewport.width"),
                    _as_int(vp.get("height", DEFAULT_VIEWPORT[1]), "viewport.height"),
                )
        if "element_timeout_ms" in data:
            config.element_timeout_ms = _as_int(data["element_timeout_ms"], "element_timeout_ms")
        if "action_delay_ms" in data:
            config.action_delay_ms = _as_int(data["action_delay_ms"], "action_delay_ms")
        if "sync_debounce_ms" in data:
            config.sync_debounce_ms = _as_int(data["sync_debounce_ms"], "sync_debounce_ms")
        if isinstance(data.get("widget"), dict):
            config.widget = dict(data["widget"])

        return config

    def widget_options(self, **overrides: Any) -> WidgetOptions:
        """Embed options from the ``widget:`` block, project keys and ``overrides``."""
        merged: dict[str, Any] = {
            "config_id": self.config_id,
            "api_key": self.api_key,
            "client_id": self.client_id,
            "action_delay_ms": self.action_delay_ms,
        }
        merged.update(self.widget)
        for key, value in overrides.items():
            if value is None:
                continue
            merged.pop(_CAMEL_ALIASES.get(key, key), None)
            merged[key] = value
        return WidgetOptions.from_dict(merged)


_CAMEL_ALIASES = {
    "config_id": "configId",
    "api_key": "apiKey",
    "auto_start": "autoStart",
    "auto_execute_actions": "autoExecuteActions",
    "action_delay_ms": "actionDelay",
    "allowed_routes": "allowedRoutes",
    "client_id": "clientId",
}

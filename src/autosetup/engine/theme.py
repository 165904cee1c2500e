"""Widget theme and per-step theme overrides.

A step's override is a record of optional fields merged field by field over
the configuration theme at render time.  Only fields the override actually
sets win; everything else falls through to the base theme.
"""

from __future__ import annotations

import dataclasses
from typing import Any

HIGHLIGHT_ANIMATIONS = ("pulse", "glow", "border", "shake", "bounce", "fade")
BORDER_RADII = {"none": "0px", "sm": "4px", "rounded": "8px", "lg": "12px", "xl": "16px"}


@dataclasses.dataclass(frozen=True)
class Theme:
    """Resolved theme used by the renderer."""

    template: str = "modern"
    primary_color: str = "#6366f1"
    secondary_color: str = "#8b5cf6"
    background_color: str = "#ffffff"
    text_color: str = "#1f2937"
    highlight_animation: str = "pulse"
    border_radius: str = "rounded"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Theme:
        """Build from the configuration ``theme`` block (camelCase keys)."""
        data = data or {}
        base = cls()
        animation = data.get("highlightAnimation") or base.highlight_animation
        radius = data.get("borderRadius") or base.border_radius
        return cls(
            template=data.get("template") or base.template,
            primary_color=data.get("primaryColor") or base.primary_color,
            secondary_color=data.get("secondaryColor") or base.secondary_color,
            background_color=data.get("backgroundColor") or base.background_color,
            text_color=data.get("textColor") or base.text_color,
            highlight_animation=animation if animation in HIGHLIGHT_ANIMATIONS else base.highlight_animation,
            border_radius=radius if radius in BORDER_RADII else base.border_radius,
        )

    @property
    def radius_css(self) -> str:
        return BORDER_RADII.get(self.border_radius, BORDER_RADII["rounded"])

    def merged(self, override: ThemeOverride | None) -> Theme:
        """Return this theme with every field ``override`` sets applied."""
        if override is None or not override.enabled:
            return self
        changes = {
            name: value
            for name, value in (
                ("primary_color", override.primary_color),
                ("background_color", override.background_color),
                ("text_color", override.text_color),
                ("highlight_animation", override.animation),
                ("border_radius", override.border_radius),
            )
            if value is not None
        }
        return dataclasses.replace(self, **changes)


@dataclasses.dataclass(frozen=True)
class ThemeOverride:
    """Optional per-step theme fields. ``None`` means "inherit"."""

    enabled: bool = True
    primary_color: str | None = None
    background_color: str | None = None
    text_color: str | None = None
    animation: str | None = None
    border_radius: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThemeOverride:
        animation = data.get("animation")
        radius = data.get("borderRadius", data.get("border_radius"))
        return cls(
            enabled=bool(data.get("enabled", True)),
            primary_color=data.get("primaryColor", data.get("primary_color")) or None,
            background_color=data.get("backgroundColor", data.get("background_color")) or None,
            text_color=data.get("textColor", data.get("text_color")) or None,
            animation=animation if animation in HIGHLIGHT_ANIMATIONS else None,
            border_radius=radius if radius in BORDER_RADII else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"enabled": self.enabled}
        for key, value in (
            ("primaryColor", self.primary_color),
            ("backgroundColor", self.background_color),
            ("textColor", self.text_color),
            ("animation", self.animation),
            ("borderRadius", self.border_radius),
        ):
            if value is not None:
                data[key] = value
        return data

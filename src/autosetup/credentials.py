"""Tour API key lookup for AutoSetup.

The key for a tour configuration is looked up in a fixed chain of sources;
the first one that yields a non-empty value wins:

=========  ====================================================
flag       ``--api-key`` on the command line
env        the ``AUTOSETUP_API_KEY`` environment variable
dotenv     an ``AUTOSETUP_API_KEY=`` line in ``./.env``
project    ``autosetup_api_key`` / ``api_key`` in the project config
global     the same keys in ``~/.autosetup/config.yaml``
=========  ====================================================

The source name travels with the key so the CLI can say where it came from
without ever printing the key itself.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

import yaml

from autosetup.config import AutoSetupConfigError

logger = logging.getLogger("autosetup.credentials")

ENV_VAR = "AUTOSETUP_API_KEY"

# Config-file spellings, most specific first
_CONFIG_KEYS = ("autosetup_api_key", "api_key")


@dataclass(frozen=True)
class ApiKey:
    """A resolved key and the name of the source it came from."""

    source: str
    value: str = field(repr=False)

    @property
    def display(self) -> str:
        return f"{mask_key(self.value)} (from {self.source})"


def _sources(
    project_dir: Path | None, explicit: str | None
) -> Iterator[tuple[str, Callable[[], Optional[str]]]]:
    yield "flag", lambda: explicit
    yield "env", lambda: os.environ.get(ENV_VAR)
    yield "dotenv", lambda: _parse_env_file(Path(".env"), ENV_VAR)
    if project_dir is not None:
        yield "project", lambda: _parse_yaml_key(project_dir / "config.yaml")
    yield "global", lambda: _parse_yaml_key(Path.home() / ".autosetup" / "config.yaml")


def lookup_api_key(project_dir: Path | None = None, explicit: str | None = None) -> ApiKey:
    """Walk the source chain and return the first key found.

    Raises:
        AutoSetupConfigError: If no source has a key.
    """
    for source, read in _sources(project_dir, explicit):
        value = read()
        if value:
            logger.debug("Tour API key taken from %s", source)
            return ApiKey(source, value)

    raise AutoSetupConfigError(
        f"{ENV_VAR} not set\n\n"
        "AutoSetup needs the configuration's API key to fetch a tour.\n\n"
        "To fix:\n"
        f"  export {ENV_VAR}=your-configuration-key\n"
        "  or: add api_key to .autosetup/config.yaml"
    )


def resolve_api_key(project_dir: Path | None = None, explicit: str | None = None) -> str:
    """The key value alone; see :func:`lookup_api_key`."""
    return lookup_api_key(project_dir, explicit).value


def mask_key(key: str) -> str:
    """Mask an API key for display. Shows first 4 and last 3 chars."""
    if len(key) <= 10:
        return "***"
    return f"{key[:4]}...{key[-3:]}"


def _parse_env_file(path: Path, key_name: str) -> str | None:
    """Value of ``key_name`` in a dotenv file (``export`` prefixes allowed)."""
    if not path.is_file():
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.debug("Could not read %s: %s", path, exc)
        return None
    for raw in text.splitlines():
        name, sep, value = raw.strip().partition("=")
        if not sep or name.startswith("#"):
            continue
        if name.removeprefix("export ").strip() == key_name:
            return value.strip().strip("'\"") or None
    return None


def _parse_yaml_key(path: Path) -> str | None:
    """API key from a YAML config file, or None when it has none."""
    if not path.is_file():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.debug("Could not read %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        return None
    for name in _CONFIG_KEYS:
        if data.get(name):
            return str(data[name])
    return None

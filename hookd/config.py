"""Hook configuration.

Settings come from three layers, later layers winning:

1. Built-in defaults (lint: 30s timeout, test: 60s timeout, 2s cooldown)
2. A JSON config file ($HOOKD_CONFIG, else $XDG_CONFIG_HOME/hookd/config.json)
3. Environment variables (HOOKD_HOOKS_LINT_TIMEOUT_SECONDS style, plus the
   legacy CLAUDE_HOOKS_LINT_TIMEOUT / CLAUDE_HOOKS_LINT_COOLDOWN names)

Example config.json:

    {
        "hooks": {
            "lint": {"timeout_seconds": 45, "cooldown_seconds": 5},
            "test": {"timeout_seconds": 120}
        }
    }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from hookd.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_LINT_TIMEOUT = 30
DEFAULT_TEST_TIMEOUT = 60
DEFAULT_COOLDOWN = 2

CHECK_TYPES = ("lint", "test")


@dataclass
class HookSettings:
    """Timeout and cooldown for one check type, in seconds."""

    timeout_seconds: int
    cooldown_seconds: int


@dataclass
class Settings:
    """Resolved runtime settings for the hook entrypoints and the daemon."""

    lint: HookSettings = field(
        default_factory=lambda: HookSettings(DEFAULT_LINT_TIMEOUT, DEFAULT_COOLDOWN)
    )
    test: HookSettings = field(
        default_factory=lambda: HookSettings(DEFAULT_TEST_TIMEOUT, DEFAULT_COOLDOWN)
    )
    debug: bool = False
    no_server: bool = False
    socket_path: Optional[Path] = None
    config_file: Optional[Path] = None

    def for_check(self, check_type: str) -> HookSettings:
        """Return the settings used for a check type.

        ``validate`` runs lint and test together, so it gets the longer
        timeout and the longer cooldown of the two.
        """
        if check_type == "lint":
            return self.lint
        if check_type == "test":
            return self.test
        if check_type == "validate":
            return HookSettings(
                timeout_seconds=max(self.lint.timeout_seconds, self.test.timeout_seconds),
                cooldown_seconds=max(self.lint.cooldown_seconds, self.test.cooldown_seconds),
            )
        raise ValueError(f"Unknown check type: {check_type}")


def config_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Locate the config file (it need not exist)."""
    env = os.environ if environ is None else environ
    explicit = env.get("HOOKD_CONFIG")
    if explicit:
        return Path(explicit).expanduser()

    xdg_config = env.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config) / "hookd" / "config.json"
    return Path.home() / ".config" / "hookd" / "config.json"


def load_config_file(path: Path) -> dict:
    """Read the JSON config file.

    Returns:
        The parsed mapping, or an empty dict when the file does not exist.

    Raises:
        ConfigError: If the file cannot be read or is not a JSON object.
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")
    return data


def _positive_int(value: object, minimum: int) -> Optional[int]:
    # bool is an int subclass; "true" is never a valid timeout
    if isinstance(value, bool):
        return None
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if number >= minimum else None


def _apply_file_section(target: HookSettings, section: object) -> None:
    if not isinstance(section, dict):
        return
    timeout = _positive_int(section.get("timeout_seconds"), minimum=1)
    if timeout is not None:
        target.timeout_seconds = timeout
    cooldown = _positive_int(section.get("cooldown_seconds"), minimum=0)
    if cooldown is not None:
        target.cooldown_seconds = cooldown


def _apply_env(target: HookSettings, check_type: str, env: Mapping[str, str]) -> None:
    upper = check_type.upper()
    timeout_names = (f"HOOKD_HOOKS_{upper}_TIMEOUT_SECONDS", f"CLAUDE_HOOKS_{upper}_TIMEOUT")
    cooldown_names = (f"HOOKD_HOOKS_{upper}_COOLDOWN_SECONDS", f"CLAUDE_HOOKS_{upper}_COOLDOWN")

    for name in timeout_names:
        if name in env:
            timeout = _positive_int(env[name], minimum=1)
            if timeout is not None:
                target.timeout_seconds = timeout
            else:
                logger.warning(f"Ignoring invalid {name}={env[name]!r}")
    for name in cooldown_names:
        if name in env:
            cooldown = _positive_int(env[name], minimum=0)
            if cooldown is not None:
                target.cooldown_seconds = cooldown
            else:
                logger.warning(f"Ignoring invalid {name}={env[name]!r}")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Resolve settings from defaults, the config file and the environment.

    A malformed config file is logged and ignored so a typo never disables
    the hooks outright.
    """
    env = os.environ if environ is None else environ
    settings = Settings()

    path = config_path(env)
    try:
        data = load_config_file(path)
    except ConfigError as e:
        logger.warning(f"{e}; using defaults")
        data = {}
    else:
        if data:
            settings.config_file = path

    hooks = data.get("hooks", {})
    if isinstance(hooks, dict):
        _apply_file_section(settings.lint, hooks.get("lint"))
        _apply_file_section(settings.test, hooks.get("test"))

    _apply_env(settings.lint, "lint", env)
    _apply_env(settings.test, "test", env)

    settings.debug = env.get("CLAUDE_HOOKS_DEBUG") == "1"
    settings.no_server = env.get("HOOKD_NO_SERVER") == "1"
    socket_override = env.get("HOOKD_SOCKET")
    if socket_override:
        settings.socket_path = Path(socket_override)

    return settings

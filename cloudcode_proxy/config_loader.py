"""Gateway config file loading.

The config is a YAML mapping whose top-level keys are the gateway's sections.
String values may reference variables as ``${NAME}`` or ``${NAME:-fallback}``;
they resolve from a dotenv file first, then the process environment. The
dotenv file is ``CLOUDCODE_PROXY_ENV`` if set, otherwise ``.env`` beside the
config file.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import dotenv_values

from .core.exceptions import ConfigurationError

logger = logging.getLogger("cloudcode-proxy")

DEFAULT_CONFIG_PATH = "configs/config_default.yaml"

CONFIG_ENV_VAR = "CLOUDCODE_PROXY_CONFIG"
ENV_FILE_ENV_VAR = "CLOUDCODE_PROXY_ENV"

# Expected container type of each known top-level section
SECTION_TYPES: dict[str, type] = {
    "upstream": dict,
    "oauth": dict,
    "pool": dict,
    "retry": dict,
    "caches": dict,
    "schema": dict,
    "logging": dict,
    "accounts": list,
}

_VARIABLE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def resolve_config_path(path: str) -> Path:
    """Resolve a relative config path against the project root."""
    if Path(path).is_absolute():
        return Path(path)
    return Path(__file__).parent.parent / path


def resolve_env_path(config_path: Path, env_path: Optional[str] = None) -> Path:
    env_path = env_path or os.getenv(ENV_FILE_ENV_VAR)
    if env_path:
        return resolve_config_path(env_path)
    return config_path.with_name(".env")


def load_config(
    path: Optional[str] = None,
    env_path: Optional[str] = None,
    substitute_env: bool = True,
) -> dict[str, Any]:
    """Read, validate and resolve the gateway config file.

    Args:
        path: Config file. Defaults to CLOUDCODE_PROXY_CONFIG, then
              configs/config_default.yaml in the project root.
        env_path: Dotenv file to resolve ``${NAME}`` references from.
        substitute_env: Leave ``${NAME}`` references untouched when False.

    Returns:
        The config mapping with variables resolved.

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML, or a
            known section has the wrong shape.
    """
    config_path = resolve_config_path(path or os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
    if not config_path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Config file {config_path} is not valid YAML: {exc}") from exc

    validate_sections(data, source=str(config_path))

    if substitute_env:
        env_file = resolve_env_path(config_path, env_path)
        env_values: dict[str, str] = {}
        if env_file.is_file():
            logger.info(f"Loading environment variables from {env_file}")
            env_values = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
        missing: set[str] = set()
        data = _substitute_env_vars(data, env_values, missing)
        if missing:
            logger.warning(
                f"Config references unset variables {', '.join(sorted(missing))}; "
                f"their placeholders are kept"
            )
    return data


def validate_sections(data: Any, source: str = "config") -> None:
    """Check the top level of a parsed config before it is resolved."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{source} must contain a mapping, got {type(data).__name__}")
    for name, value in data.items():
        expected = SECTION_TYPES.get(name)
        if expected is None:
            logger.warning(f"Ignoring unknown config section '{name}' in {source}")
        elif value is not None and not isinstance(value, expected):
            kind = "a list" if expected is list else "a mapping"
            raise ConfigurationError(f"Config section '{name}' in {source} must be {kind}")


def _substitute_env_vars(
    obj: Any, env_values: Mapping[str, str], missing: Optional[set[str]] = None
) -> Any:
    """Resolve ``${NAME}`` references in every string of a config tree."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v, env_values, missing) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item, env_values, missing) for item in obj]
    if not isinstance(obj, str):
        return obj

    def replace(match: re.Match) -> str:
        name, fallback = match.group(1), match.group(2)
        value = env_values.get(name, os.getenv(name))
        if value is not None:
            return value
        if fallback is not None:
            return fallback
        if missing is not None:
            missing.add(name)
        return match.group(0)

    return _VARIABLE.sub(replace, obj)

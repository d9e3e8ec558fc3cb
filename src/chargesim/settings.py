"""Configuration file and environment helpers.

Configuration is layered: dataclass defaults, then a YAML file, then
``CHARGESIM_*`` environment variables, then command line options. This
module covers the middle two layers; the config dataclasses call
``build_config`` to turn the merged mapping into an instance.
"""

import dataclasses
import logging
import os
import typing
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import yaml

from chargesim.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHARGESIM_"

T = TypeVar("T")

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML configuration file.

    Args:
        path: File to read.

    Returns:
        Top-level mapping of the file (empty for an empty file).

    Raises:
        ConfigurationError: If the file cannot be read or is not a mapping.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file: {e}", {"path": str(path)})
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML: {e}", {"path": str(path)})

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration file must contain a mapping", {"path": str(path)})
    return data


def normalize_keys(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn ``update-interval-ms`` style keys into field names."""
    return {str(key).replace("-", "_"): value for key, value in data.items()}


def _base_type(hint: Any) -> Any:
    """Strip ``Optional[...]`` from a type hint."""
    if typing.get_origin(hint) is typing.Union:
        args = [arg for arg in typing.get_args(hint) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return hint


def _coerce(name: str, raw: str, hint: Any) -> Any:
    base = _base_type(hint)
    origin = typing.get_origin(base)

    if base is bool:
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ConfigurationError(f"Invalid boolean for {name}: {raw!r}")
    if base is int:
        try:
            return int(raw)
        except ValueError:
            raise ConfigurationError(f"Invalid integer for {name}: {raw!r}")
    if base is float:
        try:
            return float(raw)
        except ValueError:
            raise ConfigurationError(f"Invalid number for {name}: {raw!r}")
    if origin in (list, typing.List):
        return [item.strip() for item in raw.split(",") if item.strip()]
    if origin in (dict, typing.Dict):
        return parse_weights(raw.split(","))
    return raw


def env_overrides(
    cls: Type[Any],
    prefix: str = ENV_PREFIX,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Collect overrides for a config dataclass from the environment.

    ``CHARGESIM_UPDATES=5`` overrides the ``updates`` field. List fields
    take comma-separated values; mapping fields take ``NAME=weight`` pairs.

    Args:
        cls: Config dataclass.
        prefix: Variable name prefix.
        environ: Environment to read, ``os.environ`` by default.

    Returns:
        Mapping of field name to coerced value.
    """
    environ = os.environ if environ is None else environ
    hints = typing.get_type_hints(cls)
    overrides: Dict[str, Any] = {}

    for f in dataclasses.fields(cls):
        key = f"{prefix}{f.name.upper()}"
        if key in environ:
            overrides[f.name] = _coerce(key, environ[key], hints[f.name])
            logger.debug("Configuration override from %s", key)

    return overrides


def parse_weights(items: Any) -> Dict[str, float]:
    """Parse ``NAME=weight`` strings into a weight mapping.

    Raises:
        ConfigurationError: On a malformed pair or a non-numeric weight.
    """
    weights: Dict[str, float] = {}
    for item in items:
        name, sep, value = str(item).partition("=")
        if not sep or not name.strip():
            raise ConfigurationError(f"Expected NAME=weight, got {item!r}")
        try:
            weights[name.strip()] = float(value)
        except ValueError:
            raise ConfigurationError(f"Weight must be a number: {item!r}")
    return weights


def build_config(cls: Type[T], data: Mapping[str, Any]) -> T:
    """Instantiate a config dataclass from a mapping.

    Args:
        cls: Config dataclass.
        data: Field values; hyphenated keys are accepted.

    Returns:
        New config instance (not yet validated).

    Raises:
        ConfigurationError: On unknown keys or values the constructor rejects.
    """
    values = normalize_keys(data)
    known = {f.name for f in dataclasses.fields(cls) if f.init}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown configuration keys for {cls.__name__}: {', '.join(unknown)}"
        )
    try:
        return cls(**values)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid {cls.__name__}: {e}")

"""Configuration helpers for the pricing pipeline."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import yaml

from .errors import ConfigError

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "defaults.yaml"

T = TypeVar("T")


def load_config(path: Optional[str | Path] = None, *, env_var: str = "CFBPRICE_CONFIG") -> Dict[str, Any]:
    """Read the pipeline configuration.

    Lookup order is ``path``, then the file named by ``env_var``, then the
    ``config/defaults.yaml`` shipped next to the package. A blank file loads
    as ``{}``; a document whose root is not a mapping raises
    :class:`~cfbprice.errors.ConfigError`.
    """

    source = Path(path or os.environ.get(env_var) or DEFAULT_CONFIG_PATH).expanduser()
    if not source.is_file():
        raise FileNotFoundError(f"No config file at {source}")
    loaded = yaml.safe_load(source.read_text(encoding="utf-8"))
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{source}: top level must be a mapping, found {type(loaded).__name__}")
    return loaded


def section(config: Optional[Mapping[str, Any]], name: str) -> Dict[str, Any]:
    """Return ``config[name]`` as a dict (empty when absent)."""

    if not config:
        return {}
    value = config.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Config section '{name}' must be a mapping; got {type(value).__name__}")
    return dict(value)


def build_dataclass(cls: Type[T], values: Optional[Mapping[str, Any]]) -> T:
    """Instantiate ``cls`` overlaying ``values`` on its defaults.

    Lists are converted to tuples so frozen configs stay hashable.
    """

    if not values:
        return cls()
    known = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    kwargs = {key: tuple(val) if isinstance(val, list) else val for key, val in values.items()}
    try:
        return cls(**kwargs)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {cls.__name__} configuration: {exc}") from exc

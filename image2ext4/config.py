"""
Run configuration.

Values come from three places, highest precedence first: command-line flags,
an optional YAML file, then the defaults below.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .convert import VARIANTS
from .errors import ConfigError

DEFAULT_DATA_DIR = "data"
DEFAULT_VARIANTS = ["ext4", "vhd", "overlayfs"]


@dataclass
class RunConfig:
    image: str = ""
    data_dir: str = DEFAULT_DATA_DIR
    base_dir: str = "."
    build: bool = True
    docker: str = "docker"
    tar2ext4: str = "tar2ext4"
    variants: List[str] = field(default_factory=lambda: list(DEFAULT_VARIANTS))
    log_level: str = "INFO"

    def validate(self) -> "RunConfig":
        if not self.image or not self.image.strip():
            raise ConfigError("no image specified, use --image")
        if self.build and not os.path.isdir(self.data_dir):
            raise ConfigError("build context directory does not exist", path=self.data_dir)
        if not self.variants:
            raise ConfigError("at least one image variant is required")
        unknown = [name for name in self.variants if name not in VARIANTS]
        if unknown:
            raise ConfigError(f"unknown image variant(s): {', '.join(unknown)}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"unknown log level: {self.log_level}")
        return self


_FIELD_TYPES = {
    "image": str,
    "data_dir": str,
    "base_dir": str,
    "build": bool,
    "docker": str,
    "tar2ext4": str,
    "variants": list,
    "log_level": str,
}


def load_config_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except OSError as exc:
        raise ConfigError(f"unable to read config file: {exc.strerror}", path=path) from exc

    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}", path=path) from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError("config file must contain a mapping", path=path)
    return loaded


def _check_values(values: Mapping[str, Any], source: str) -> Dict[str, Any]:
    checked: Dict[str, Any] = {}
    for key, value in values.items():
        key = str(key).replace("-", "_")
        expected = _FIELD_TYPES.get(key)
        if expected is None:
            raise ConfigError(f"unknown setting {key!r} in {source}")
        if not isinstance(value, expected):
            raise ConfigError(f"setting {key!r} in {source} must be of type {expected.__name__}")
        if key == "variants" and not all(isinstance(item, str) for item in value):
            raise ConfigError(f"setting 'variants' in {source} must be a list of strings")
        checked[key] = value
    return checked


def build_config(
    overrides: Optional[Mapping[str, Any]] = None,
    config_path: Optional[str] = None,
) -> RunConfig:
    """Merge defaults, the YAML file and overrides (None values are ignored)."""
    values: Dict[str, Any] = {}
    if config_path:
        values.update(_check_values(load_config_file(config_path), config_path))
    if overrides:
        values.update(_check_values({k: v for k, v in overrides.items() if v is not None}, "command line"))

    return RunConfig(**values).validate()

"""
Parse the manifest.json written by `docker save`.

The document is a list of image descriptors; only the first one is used.
Its "Layers" list is the authoritative application order, index 0 first.
"""

import json
import logging
import os
import posixpath
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .errors import FormatError, ImageIOError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


@dataclass(frozen=True)
class Layer:
    path: str
    index: int

    def resolve(self, save_root: str) -> str:
        return os.path.join(save_root, *self.path.split("/"))


@dataclass(frozen=True)
class Manifest:
    layers: List[Layer]
    config: Optional[str] = None
    repo_tags: List[str] = field(default_factory=list)

    def layer_paths(self, save_root: str) -> List[str]:
        return [layer.resolve(save_root) for layer in self.layers]


def _normalize_layer_path(value: str) -> str:
    if not value:
        raise FormatError("empty layer path in manifest", path=MANIFEST_NAME)
    if value.startswith("/"):
        raise FormatError(f"layer path must be relative: {value}", path=MANIFEST_NAME)
    normalized = posixpath.normpath(value)
    if normalized in (".", "..") or normalized.startswith("../"):
        raise FormatError(f"layer path escapes the image root: {value}", path=MANIFEST_NAME)
    return normalized


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def parse_manifest(document: Any) -> Manifest:
    if not isinstance(document, list) or not document:
        raise FormatError("manifest must be a non-empty list of image descriptors", path=MANIFEST_NAME)

    descriptor = document[0]
    if not isinstance(descriptor, dict):
        raise FormatError("image descriptor must be an object", path=MANIFEST_NAME)
    if len(document) > 1:
        logger.info("manifest lists %d images, using the first", len(document))

    raw_layers = descriptor.get("Layers")
    if raw_layers is None:
        raise FormatError('image descriptor has no "Layers" field', path=MANIFEST_NAME)
    if not _is_string_list(raw_layers):
        raise FormatError('"Layers" must be a list of strings', path=MANIFEST_NAME)

    layers = [
        Layer(path=_normalize_layer_path(raw), index=idx)
        for idx, raw in enumerate(raw_layers)
    ]

    # Config and RepoTags are informational; a mistyped value is dropped.
    config = descriptor.get("Config")
    if config is not None and not isinstance(config, str):
        logger.debug("ignoring non-string Config in %s", MANIFEST_NAME)
        config = None
    repo_tags = descriptor.get("RepoTags")
    if repo_tags is not None and not _is_string_list(repo_tags):
        logger.debug("ignoring malformed RepoTags in %s", MANIFEST_NAME)
        repo_tags = None

    return Manifest(layers=layers, config=config, repo_tags=repo_tags or [])


def load_manifest(save_root: str) -> Manifest:
    manifest_path = os.path.join(save_root, MANIFEST_NAME)
    try:
        with open(manifest_path, "r", encoding="utf-8") as fh:
            document = json.load(fh)
    except FileNotFoundError as exc:
        raise FormatError("image-save archive has no manifest", path=manifest_path) from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FormatError(f"manifest is not valid JSON: {exc}", path=manifest_path) from exc
    except OSError as exc:
        raise ImageIOError.from_os_error(exc) from exc

    manifest = parse_manifest(document)
    logger.info("manifest %s lists %d layer(s)", manifest_path, len(manifest.layers))
    return manifest

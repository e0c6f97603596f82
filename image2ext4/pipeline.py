"""
End-to-end conversion of a docker image into ext4 images.

    build → save → unpack → manifest → compose → serialize → convert

Every stage takes explicit paths; nothing here changes the process working
directory. The first failure aborts the run. Work directories are left as
they are for inspection.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from .config import RunConfig
from .convert import Converter, Tar2Ext4Converter, convert_variants
from .engine import DockerCLI
from .errors import Image2Ext4Error, ImageIOError
from .export_rootfs import export_tree
from .extract_rootfs import LayerCompositor, prepare_destination
from .manifest import load_manifest
from .workspace import Workspace

logger = logging.getLogger(__name__)


@contextmanager
def _stage(name: str) -> Iterator[None]:
    logger.debug("entering stage %s", name)
    try:
        yield
    except Image2Ext4Error as exc:
        if exc.stage is None:
            exc.stage = name
        raise
    except OSError as exc:
        raise ImageIOError.from_os_error(exc, stage=name) from exc


@dataclass
class Artifacts:
    canonical_tarball: str
    images: Dict[str, str] = field(default_factory=dict)


def unpack_image_archive(image_tarball: str, save_root: str) -> None:
    """Extract a `docker save` archive into save_root, keeping names literal."""
    os.makedirs(save_root, exist_ok=True)
    compositor = LayerCompositor(save_root, whiteouts=False)
    compositor.apply_layer(image_tarball)
    compositor.finalize()


def materialize(save_root: str, tree_root: str, canonical_tarball: str) -> str:
    """Flatten the image extracted at save_root into tree_root and archive it."""
    with _stage("manifest"):
        manifest = load_manifest(save_root)
    with _stage("compose"):
        prepare_destination(tree_root)
        LayerCompositor(tree_root).apply_layers(manifest.layer_paths(save_root))
    with _stage("serialize"):
        export_tree(tree_root, canonical_tarball)
    return canonical_tarball


def run(
    config: RunConfig,
    engine: Optional[DockerCLI] = None,
    converter: Optional[Converter] = None,
) -> Artifacts:
    engine = engine or DockerCLI(config.docker)
    converter = converter or Tar2Ext4Converter(config.tar2ext4)
    workspace = Workspace(os.path.abspath(config.base_dir), config.image)

    if config.build:
        with _stage("build"):
            engine.build(os.path.abspath(config.data_dir), [config.image])

    with _stage("save"):
        workspace.prepare()
        engine.save(config.image, workspace.image_tarball)

    with _stage("unpack"):
        unpack_image_archive(workspace.image_tarball, workspace.work_dir)

    canonical = materialize(workspace.work_dir, workspace.extraction_dir, workspace.canonical_tarball)

    with _stage("convert"):
        images = convert_variants(converter, canonical, workspace.artifacts(config.variants))

    return Artifacts(canonical_tarball=canonical, images=images)

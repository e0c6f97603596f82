#!/usr/bin/env python3
"""
Archive a merged rootfs tree as a canonical, reproducible tarball.

Members are emitted depth-first with siblings sorted by the bytes of their
names, so the result never depends on directory enumeration order. All
metadata that varies between runs is pinned: mtime is CANONICAL_MTIME,
owner and group are 0 with empty names, and only permission bits are taken
from disk. Hard links are not reconstructed; every path becomes its own
regular-file member.
"""

import argparse
import logging
import os
import stat
import sys
import tarfile
import tempfile
from typing import BinaryIO, Iterator, List, Optional, Tuple

from .errors import FormatError, Image2Ext4Error, ImageIOError
from .extract_rootfs import LayerCompositor, remove_tree
from .manifest import load_manifest

logger = logging.getLogger(__name__)

CANONICAL_MTIME = 0


def iter_tree(root: str, _prefix: str = "") -> Iterator[Tuple[str, str]]:
    """Yield (relative path, absolute path) pairs in canonical order."""
    directory = os.path.join(root, *_prefix.split("/")) if _prefix else root
    for name in sorted(os.listdir(directory), key=os.fsencode):
        relpath = f"{_prefix}/{name}" if _prefix else name
        path = os.path.join(directory, name)
        yield relpath, path
        if os.path.isdir(path) and not os.path.islink(path):
            yield from iter_tree(root, relpath)


def _canonical_info(relpath: str, path: str, st: os.stat_result) -> tarfile.TarInfo:
    info = tarfile.TarInfo(relpath)
    info.mtime = CANONICAL_MTIME
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    info.mode = stat.S_IMODE(st.st_mode)

    if stat.S_ISDIR(st.st_mode):
        info.type = tarfile.DIRTYPE
    elif stat.S_ISLNK(st.st_mode):
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(path)
    elif stat.S_ISREG(st.st_mode):
        info.type = tarfile.REGTYPE
        info.size = st.st_size
    else:
        raise FormatError("unsupported file type in merged tree", path=path)
    return info


def write_canonical_tarball(root: str, fileobj: BinaryIO) -> int:
    """Stream the tree under root into fileobj; returns the member count."""
    count = 0
    try:
        with tarfile.open(
            fileobj=fileobj,
            mode="w|",
            format=tarfile.PAX_FORMAT,
            encoding="utf-8",
            errors="surrogateescape",
        ) as archive:
            for relpath, path in iter_tree(root):
                st = os.lstat(path)
                info = _canonical_info(relpath, path, st)
                logger.debug("tarring %s", relpath)
                if info.isreg():
                    with open(path, "rb") as src:
                        archive.addfile(info, src)
                else:
                    archive.addfile(info)
                count += 1
    except OSError as exc:
        raise ImageIOError.from_os_error(exc) from exc
    return count


def export_tree(root: str, tarball: str) -> str:
    """Write the canonical tarball for root to the tarball path."""
    parent = os.path.dirname(os.path.abspath(tarball))
    try:
        os.makedirs(parent, exist_ok=True)
        with open(tarball, "wb") as out:
            count = write_canonical_tarball(root, out)
    except OSError as exc:
        raise ImageIOError.from_os_error(exc) from exc
    logger.info("wrote %d entries to %s", count, tarball)
    return tarball


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Create a canonical rootfs tarball from an extracted docker save directory.")
    parser.add_argument("--layout", required=True, help="Path to the extracted image-save directory.")
    parser.add_argument("--output", required=True, help="Path to the output tarball.")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

    layout_dir = os.path.abspath(args.layout)
    output_path = os.path.abspath(args.output)

    work_dir = tempfile.mkdtemp(prefix="image2ext4_rootfs_")
    try:
        manifest = load_manifest(layout_dir)
        LayerCompositor(work_dir).apply_layers(manifest.layer_paths(layout_dir))
        export_tree(work_dir, output_path)
    except Image2Ext4Error as exc:
        print(f"export_rootfs: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        remove_tree(work_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())

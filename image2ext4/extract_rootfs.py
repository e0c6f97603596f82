#!/usr/bin/env python3
"""
Apply container image layers to a rootfs directory with OCI whiteout semantics.

Each layer tarball is streamed member by member, in archive order, onto one
shared tree. `.wh.<name>` files delete `<name>` from what earlier layers
left behind, and `.wh..wh..opq` drops everything lower layers left in its
directory while keeping what the same layer writes there. Marker files are
never materialised.

Path-safety policy: absolute member names, names escaping the root via
`..`, and names whose parent chain inside the tree crosses a symbolic link
are all rejected with FormatError. Symlink targets are stored verbatim and
never followed while writing.
"""

import argparse
import logging
import os
import posixpath
import shutil
import sys
import tarfile
from typing import Dict, Iterable, List, Optional, Set

from .errors import FormatError, Image2Ext4Error, ImageIOError

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
OPAQUE_MARKER = ".wh..wh..opq"
# aufs bookkeeping entries such as .wh..wh.plnk share this prefix
WHITEOUT_META_PREFIX = ".wh..wh."

# Directories stay owner-writable until finalize() so later entries can land in them.
_WORKING_DIR_MODE = 0o755


def normalize_member_name(name: str) -> Optional[str]:
    """Return the tree-relative path for an archive member, or None for the root."""
    if name.startswith("/"):
        raise FormatError(f"refusing absolute path in archive: {name}")
    normalized = posixpath.normpath(name) if name else "."
    if normalized == ".":
        return None
    if normalized == ".." or normalized.startswith("../"):
        raise FormatError(f"refusing to extract path outside destination: {name}")
    return normalized


def _remove_path(path: str) -> None:
    if not os.path.lexists(path):
        return
    if os.path.islink(path) or not os.path.isdir(path):
        os.unlink(path)
    else:
        shutil.rmtree(path)


def remove_tree(path: str) -> None:
    """shutil.rmtree that also copes with read-only directories."""
    if not os.path.lexists(path):
        return

    def _retry(func, target, error):
        if isinstance(error, FileNotFoundError):
            return
        parent = os.path.dirname(target)
        if isinstance(error, PermissionError) and parent:
            os.chmod(parent, 0o700)
        if os.path.isdir(target) and not os.path.islink(target):
            os.chmod(target, 0o700)
        func(target)

    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_retry)
    else:
        shutil.rmtree(path, onerror=lambda func, target, exc_info: _retry(func, target, exc_info[1]))


def prepare_destination(dest: str) -> None:
    """Remove any stale tree at dest and create an empty root."""
    try:
        if os.path.islink(dest) or os.path.isfile(dest):
            os.unlink(dest)
        else:
            remove_tree(dest)
        os.makedirs(dest, exist_ok=True)
    except OSError as exc:
        raise ImageIOError.from_os_error(exc) from exc


class LayerCompositor:
    """Owns one rootfs tree while layers are applied to it, in order."""

    def __init__(self, root: str, whiteouts: bool = True):
        self.root = os.path.abspath(root)
        self.whiteouts = whiteouts
        self._dir_modes: Dict[str, int] = {}
        # paths written by the layer being applied, plus their ancestors
        self._written: Set[str] = set()
        self._finalized = False

    def _target(self, relpath: str) -> str:
        return os.path.join(self.root, *relpath.split("/"))

    def _check_parents(self, relpath: str, create: bool) -> bool:
        """Validate the parent chain of relpath; returns False if a parent is missing.

        With create=True missing parents are made and True is always returned.
        """
        parts = relpath.split("/")[:-1]
        current = self.root
        for idx, part in enumerate(parts):
            current = os.path.join(current, part)
            if os.path.islink(current):
                prefix = "/".join(parts[: idx + 1])
                raise FormatError(f"{relpath} traverses symbolic link {prefix}")
            if not os.path.lexists(current):
                if not create:
                    return False
                os.mkdir(current, _WORKING_DIR_MODE)
            elif not os.path.isdir(current):
                prefix = "/".join(parts[: idx + 1])
                raise FormatError(f"{relpath} needs {prefix} to be a directory")
        return True

    def _forget(self, relpath: str) -> None:
        nested = relpath + "/"
        for key in [k for k in self._dir_modes if k == relpath or k.startswith(nested)]:
            del self._dir_modes[key]

    def _clear(self, relpath: str) -> None:
        _remove_path(self._target(relpath))
        self._forget(relpath)
        self._written.discard(relpath)

    def _mark_written(self, relpath: str) -> None:
        while relpath and relpath not in self._written:
            self._written.add(relpath)
            relpath = posixpath.dirname(relpath)

    def _clear_inherited(self, relpath: str) -> None:
        """Remove entries under relpath that the current layer has not written."""
        target_dir = self._target(relpath) if relpath else self.root
        for entry in sorted(os.listdir(target_dir)):
            child = posixpath.join(relpath, entry) if relpath else entry
            if child not in self._written:
                self._clear(child)
                continue
            path = self._target(child)
            if os.path.isdir(path) and not os.path.islink(path):
                self._clear_inherited(child)

    def _apply_whiteout(self, relpath: str) -> bool:
        basename = posixpath.basename(relpath)
        if not basename.startswith(WHITEOUT_PREFIX):
            return False

        parent = posixpath.dirname(relpath)
        if not self._check_parents(relpath, create=False):
            logger.debug("whiteout %s: parent does not exist", relpath)
            return True

        if basename == OPAQUE_MARKER:
            target_dir = self._target(parent) if parent else self.root
            if os.path.isdir(target_dir):
                self._clear_inherited(parent)
            logger.debug("opaque directory %s", parent or "/")
            return True

        if basename.startswith(WHITEOUT_META_PREFIX):
            logger.debug("skipping whiteout metadata entry %s", relpath)
            return True

        name = basename[len(WHITEOUT_PREFIX):]
        if name in (".", ".."):
            raise FormatError(f"invalid whiteout entry: {relpath}")
        target_rel = posixpath.join(parent, name) if parent else name
        self._clear(target_rel)
        logger.debug("whiteout %s", target_rel)
        return True

    def _extract_directory(self, relpath: str, member: tarfile.TarInfo) -> None:
        target = self._target(relpath)
        if os.path.lexists(target) and (os.path.islink(target) or not os.path.isdir(target)):
            os.unlink(target)
        if not os.path.lexists(target):
            os.mkdir(target, _WORKING_DIR_MODE)
        self._dir_modes[relpath] = member.mode & 0o7777

    def _extract_file(self, archive: tarfile.TarFile, relpath: str, member: tarfile.TarInfo) -> None:
        target = self._target(relpath)
        self._clear(relpath)
        src = archive.extractfile(member)
        if src is None:
            raise FormatError(f"unable to read member {member.name}")
        with src, open(target, "xb") as dst:
            shutil.copyfileobj(src, dst)
        os.chmod(target, member.mode & 0o7777)

    def _extract_symlink(self, relpath: str, member: tarfile.TarInfo) -> None:
        self._clear(relpath)
        os.symlink(member.linkname, self._target(relpath))

    def _extract_hardlink(self, relpath: str, member: tarfile.TarInfo) -> None:
        link_rel = normalize_member_name(member.linkname)
        if link_rel is None:
            raise FormatError(f"hard link {relpath} points at the tree root")
        if link_rel == relpath:
            return
        if not self._check_parents(link_rel, create=False):
            raise FormatError(f"hard link {relpath} points at missing {link_rel}")
        source = self._target(link_rel)
        if not os.path.lexists(source) or (os.path.isdir(source) and not os.path.islink(source)):
            raise FormatError(f"hard link {relpath} points at missing or directory {link_rel}")
        self._clear(relpath)
        os.link(source, self._target(relpath), follow_symlinks=False)

    def _apply_member(self, archive: tarfile.TarFile, member: tarfile.TarInfo) -> None:
        relpath = normalize_member_name(member.name)
        if relpath is None:
            if not member.isdir():
                raise FormatError(f"non-directory entry for the tree root: {member.name!r}")
            return

        if member.ischr() or member.isblk() or member.isfifo():
            raise FormatError(f"unsupported special file {relpath}")

        if self.whiteouts and self._apply_whiteout(relpath):
            return

        self._check_parents(relpath, create=True)
        logger.debug("untar %s", relpath)

        if member.isdir():
            self._extract_directory(relpath, member)
        elif member.issym():
            self._extract_symlink(relpath, member)
        elif member.islnk():
            self._extract_hardlink(relpath, member)
        elif member.isfile():
            self._extract_file(archive, relpath, member)
        else:
            raise FormatError(f"unsupported member type {member.type!r} for {relpath}")
        self._mark_written(relpath)

    def apply_layer(self, layer_path: str) -> None:
        if self._finalized:
            raise RuntimeError("compositor already finalized")
        if not os.path.isfile(layer_path):
            raise ImageIOError("layer archive is missing", path=layer_path)
        self._written = set()
        try:
            with tarfile.open(layer_path, "r|*") as archive:
                for member in archive:
                    try:
                        self._apply_member(archive, member)
                    except FormatError as exc:
                        if exc.path is None:
                            exc.path = layer_path
                        raise
        except (tarfile.TarError, EOFError) as exc:
            raise FormatError(f"malformed layer archive: {exc}", path=layer_path) from exc
        except OSError as exc:
            raise ImageIOError.from_os_error(exc) from exc

    def apply_layers(self, layer_paths: Iterable[str]) -> None:
        paths = list(layer_paths)
        for idx, layer_path in enumerate(paths, start=1):
            logger.info("applying layer %d/%d: %s", idx, len(paths), layer_path)
            self.apply_layer(layer_path)
        self.finalize()

    def finalize(self) -> None:
        """Apply recorded directory modes, deepest first. The tree is read-only afterwards."""
        if self._finalized:
            return
        ordered = sorted(self._dir_modes.items(), key=lambda item: item[0].count("/"), reverse=True)
        try:
            for relpath, mode in ordered:
                path = self._target(relpath)
                if os.path.isdir(path) and not os.path.islink(path):
                    os.chmod(path, mode)
        except OSError as exc:
            raise ImageIOError.from_os_error(exc) from exc
        self._finalized = True


def extract_tarball(tarball: str, dest: str, whiteouts: bool = True) -> None:
    """Unpack one tarball into a fresh dest directory."""
    prepare_destination(dest)
    compositor = LayerCompositor(dest, whiteouts=whiteouts)
    compositor.apply_layer(os.path.abspath(tarball))
    compositor.finalize()


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Extract a rootfs tarball with whiteout handling.",
    )
    parser.add_argument("tarball", help="Path to the exported rootfs tarball.")
    parser.add_argument("destination", help="Directory to populate with the rootfs contents.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    try:
        extract_tarball(args.tarball, os.path.abspath(args.destination))
    except Image2Ext4Error as exc:
        print(f"extract_rootfs: {exc}", file=sys.stderr)
        return exc.exit_code
    return 0


if __name__ == "__main__":
    sys.exit(main())

import os

import pytest

from tarbuild import write_image, write_tar


@pytest.fixture
def rootfs(tmp_path):
    root = tmp_path / "rootfs"
    root.mkdir()
    return str(root)


@pytest.fixture
def make_layer(tmp_path):
    counter = iter(range(1000))

    def _make(entries):
        return write_tar(str(tmp_path / "layers" / f"layer{next(counter)}.tar"), entries)

    return _make


@pytest.fixture
def make_image(tmp_path):
    def _make(layers, name="save", extra=None):
        save_root = tmp_path / name
        save_root.mkdir()
        return write_image(str(save_root), layers, extra)

    return _make


@pytest.fixture
def exists(rootfs):
    def _exists(relpath):
        return os.path.lexists(os.path.join(rootfs, relpath))

    return _exists

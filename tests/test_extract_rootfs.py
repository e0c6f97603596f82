import os
import stat

import pytest

from image2ext4.errors import FormatError, ImageIOError
from image2ext4.extract_rootfs import LayerCompositor, extract_tarball, normalize_member_name, remove_tree
from tarbuild import chardev, directory, file, hardlink, opaque, symlink, whiteout, write_tar


def _read(rootfs, relpath):
    with open(os.path.join(rootfs, relpath), "rb") as fh:
        return fh.read()


def _compose(rootfs, *layers):
    LayerCompositor(rootfs).apply_layers(layers)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("./a/b", "a/b"),
        ("a/b/", "a/b"),
        ("a/../b", "b"),
        (".bashrc", ".bashrc"),
        ("./", None),
        (".", None),
        ("", None),
    ],
)
def test_normalize_member_name(name, expected):
    assert normalize_member_name(name) == expected


@pytest.mark.parametrize("name", ["../escape", "a/../../escape", "..", "/etc/passwd"])
def test_normalize_member_name_rejects_escapes(name):
    with pytest.raises(FormatError):
        normalize_member_name(name)


def test_single_layer_materializes_every_entry(rootfs, make_layer):
    layer = make_layer(
        [
            directory("etc"),
            file("etc/hostname", b"box\n"),
            file("bin/tool", b"#!/bin/sh\n", mode=0o755),
            symlink("usr/bin", "/bin"),
        ]
    )

    _compose(rootfs, layer)

    assert _read(rootfs, "etc/hostname") == b"box\n"
    assert stat.S_IMODE(os.stat(os.path.join(rootfs, "bin/tool")).st_mode) == 0o755
    assert os.readlink(os.path.join(rootfs, "usr/bin")) == "/bin"


def test_whiteout_removes_file_from_earlier_layer(rootfs, make_layer, exists):
    lower = make_layer([file("a/b", b"x"), file("a/keep", b"k")])
    upper = make_layer([whiteout("a/b")])

    _compose(rootfs, lower, upper)

    assert not exists("a/b")
    assert not exists("a/.wh.b")
    assert exists("a/keep")


def test_whiteout_removes_directory_subtree(rootfs, make_layer, exists):
    lower = make_layer([directory("var/cache"), file("var/cache/apt/pkg", b"x")])
    upper = make_layer([whiteout("var/cache")])

    _compose(rootfs, lower, upper)

    assert exists("var")
    assert not exists("var/cache")


def test_whiteout_of_missing_path_is_ignored(rootfs, make_layer, exists):
    _compose(rootfs, make_layer([whiteout("nothing/here"), whiteout("gone")]))
    assert os.listdir(rootfs) == []


def test_opaque_directory_drops_inherited_contents(rootfs, make_layer, exists):
    lower = make_layer([directory("dir"), file("dir/x", b"x"), file("dir/y", b"y"), file("other", b"o")])
    upper = make_layer([directory("dir"), opaque("dir"), file("dir/z", b"z")])

    _compose(rootfs, lower, upper)

    assert sorted(os.listdir(os.path.join(rootfs, "dir"))) == ["z"]
    assert exists("other")


def test_opaque_marker_keeps_entries_from_its_own_layer(rootfs, make_layer):
    lower = make_layer([directory("dir"), file("dir/x", b"x")])
    upper = make_layer([directory("dir"), file("dir/-keep", b"k"), opaque("dir"), file("dir/z", b"z")])

    _compose(rootfs, lower, upper)

    assert sorted(os.listdir(os.path.join(rootfs, "dir"))) == ["-keep", "z"]
    assert _read(rootfs, "dir/-keep") == b"k"


def test_opaque_marker_clears_inherited_entries_below_own_subdirectory(rootfs, make_layer, exists):
    lower = make_layer([directory("dir"), directory("dir/sub"), file("dir/sub/old", b"o"), file("dir/gone", b"g")])
    upper = make_layer([directory("dir"), directory("dir/sub"), file("dir/sub/new", b"n"), opaque("dir")])

    _compose(rootfs, lower, upper)

    assert os.listdir(os.path.join(rootfs, "dir")) == ["sub"]
    assert os.listdir(os.path.join(rootfs, "dir", "sub")) == ["new"]
    assert not exists("dir/gone")


def test_opaque_marker_on_root(rootfs, make_layer):
    lower = make_layer([file("old", b"o")])
    upper = make_layer([file(".wh..wh..opq"), file("new", b"n")])

    _compose(rootfs, lower, upper)

    assert os.listdir(rootfs) == ["new"]


def test_later_layer_overrides_file(rootfs, make_layer):
    _compose(rootfs, make_layer([file("f", b"old")]), make_layer([file("f", b"new", mode=0o600)]))

    assert _read(rootfs, "f") == b"new"
    assert stat.S_IMODE(os.stat(os.path.join(rootfs, "f")).st_mode) == 0o600


def test_read_only_file_is_replaced(rootfs, make_layer):
    _compose(rootfs, make_layer([file("f", b"old", mode=0o444)]), make_layer([file("f", b"new")]))
    assert _read(rootfs, "f") == b"new"


def test_file_replaces_directory(rootfs, make_layer):
    lower = make_layer([directory("p"), file("p/child", b"c")])
    upper = make_layer([file("p", b"now a file")])

    _compose(rootfs, lower, upper)

    assert _read(rootfs, "p") == b"now a file"


def test_directory_replaces_file_and_symlink(rootfs, make_layer):
    lower = make_layer([file("p", b"file"), symlink("q", "p")])
    upper = make_layer([directory("p"), directory("q"), file("q/inner", b"i")])

    _compose(rootfs, lower, upper)

    assert os.path.isdir(os.path.join(rootfs, "p"))
    assert not os.path.islink(os.path.join(rootfs, "q"))
    assert _read(rootfs, "q/inner") == b"i"


def test_symlink_overwrites_existing_entry(rootfs, make_layer):
    _compose(rootfs, make_layer([file("lib", b"x")]), make_layer([symlink("lib", "usr/lib")]))
    assert os.readlink(os.path.join(rootfs, "lib")) == "usr/lib"


def test_layer_can_delete_and_recreate_a_path(rootfs, make_layer):
    lower = make_layer([file("etc/conf", b"v1")])
    upper = make_layer([whiteout("etc/conf"), file("etc/conf", b"v2")])

    _compose(rootfs, lower, upper)

    assert _read(rootfs, "etc/conf") == b"v2"


def test_hard_link_shares_inode(rootfs, make_layer):
    _compose(rootfs, make_layer([file("bin/a", b"payload"), hardlink("bin/b", "bin/a")]))

    first = os.stat(os.path.join(rootfs, "bin/a"))
    second = os.stat(os.path.join(rootfs, "bin/b"))
    assert first.st_ino == second.st_ino
    assert _read(rootfs, "bin/b") == b"payload"


def test_hard_link_to_missing_target_fails(rootfs, make_layer):
    with pytest.raises(FormatError):
        _compose(rootfs, make_layer([hardlink("bin/b", "bin/missing")]))


@pytest.mark.parametrize("name", ["../escape", "/escape", "a/../../escape"])
def test_escaping_member_is_rejected(tmp_path, rootfs, make_layer, name):
    layer = make_layer([file(name, b"pwned")])

    with pytest.raises(FormatError) as excinfo:
        _compose(rootfs, layer)

    assert excinfo.value.path == layer
    assert not (tmp_path / "escape").exists()
    assert os.listdir(rootfs) == []


def test_writes_through_symlinked_directory_are_rejected(tmp_path, rootfs, make_layer):
    outside = tmp_path / "outside"
    outside.mkdir()
    lower = make_layer([symlink("etc", str(outside))])
    upper = make_layer([file("etc/passwd", b"root::0:0")])

    with pytest.raises(FormatError):
        _compose(rootfs, lower, upper)

    assert list(outside.iterdir()) == []


def test_whiteout_through_symlink_is_rejected(tmp_path, rootfs, make_layer):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "victim").write_bytes(b"keep")
    layer = make_layer([symlink("link", str(outside)), whiteout("link/victim")])

    with pytest.raises(FormatError):
        _compose(rootfs, layer)

    assert (outside / "victim").exists()


def test_hard_link_escape_is_rejected(rootfs, make_layer):
    with pytest.raises(FormatError):
        _compose(rootfs, make_layer([hardlink("shadow", "../../etc/shadow")]))


def test_directory_modes_are_applied_after_composition(rootfs, make_layer):
    lower = make_layer([directory("ro", mode=0o555), file("ro/a", b"a")])
    upper = make_layer([file("ro/b", b"b")])

    _compose(rootfs, lower, upper)

    assert stat.S_IMODE(os.stat(os.path.join(rootfs, "ro")).st_mode) == 0o555
    assert sorted(os.listdir(os.path.join(rootfs, "ro"))) == ["a", "b"]


def test_special_bits_are_kept(rootfs, make_layer):
    _compose(rootfs, make_layer([file("usr/bin/su", b"x", mode=0o4755)]))
    assert stat.S_IMODE(os.stat(os.path.join(rootfs, "usr/bin/su")).st_mode) == 0o4755


def test_device_nodes_are_rejected(rootfs, make_layer, exists):
    layer = make_layer([directory("dev"), chardev("dev/null")])

    with pytest.raises(FormatError, match="unsupported special file dev/null") as excinfo:
        _compose(rootfs, layer)

    assert excinfo.value.path == layer
    assert not exists("dev/null")


def test_aufs_metadata_entries_are_skipped(rootfs, make_layer, exists):
    _compose(rootfs, make_layer([directory(".wh..wh.plnk"), file("a", b"a")]))
    assert os.listdir(rootfs) == ["a"]


def test_missing_layer_is_an_io_error(rootfs, tmp_path):
    with pytest.raises(ImageIOError):
        LayerCompositor(rootfs).apply_layer(str(tmp_path / "nope.tar"))


def test_corrupt_layer_is_a_format_error(rootfs, tmp_path):
    broken = tmp_path / "broken.tar"
    broken.write_bytes(b"this is not a tar archive" * 40)

    with pytest.raises(FormatError):
        LayerCompositor(rootfs).apply_layer(str(broken))


def test_finalized_compositor_refuses_layers(rootfs, make_layer):
    compositor = LayerCompositor(rootfs)
    compositor.apply_layers([])
    with pytest.raises(RuntimeError):
        compositor.apply_layer(make_layer([file("a")]))


def test_extract_tarball_without_whiteouts_keeps_markers(tmp_path):
    tarball = write_tar(str(tmp_path / "plain.tar"), [file("x/.wh.y", b"")])
    dest = tmp_path / "out"

    extract_tarball(tarball, str(dest), whiteouts=False)

    assert (dest / "x" / ".wh.y").exists()


def test_extract_tarball_resets_destination(tmp_path):
    dest = tmp_path / "out"
    (dest / "stale").mkdir(parents=True)
    tarball = write_tar(str(tmp_path / "fresh.tar"), [file("fresh", b"1")])

    extract_tarball(tarball, str(dest))

    assert sorted(os.listdir(dest)) == ["fresh"]


def test_remove_tree_handles_read_only_directories_without_touching_the_parent(tmp_path):
    outer = tmp_path / "outer"
    locked = outer / "tree" / "locked"
    locked.mkdir(parents=True)
    (locked / "f").write_bytes(b"x")
    locked.chmod(0o500)
    outer.chmod(0o750)

    remove_tree(str(outer / "tree"))

    assert not (outer / "tree").exists()
    assert stat.S_IMODE(os.stat(outer).st_mode) == 0o750

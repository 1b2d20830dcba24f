"""Tests for strata.tree: entries, path helpers and tree serialization."""

import pytest

from strata import tree


def test_normalize():
    assert tree.normalize("/a/b/../c/") == "/a/c"
    assert tree.normalize("/") == "/"


def test_normalize_rejects_relative():
    with pytest.raises(ValueError):
        tree.normalize("a/b")


def test_is_under():
    assert tree.is_under("/usr/local/bundle/bin", "/usr/local/bundle")
    assert tree.is_under("/usr/local/bundle", "/usr/local/bundle")
    assert not tree.is_under("/usr/local/bundler", "/usr/local/bundle")
    assert tree.is_under("/anything", "/")


def test_ancestors_nearest_first():
    assert list(tree.ancestors("/a/b/c")) == ["/a/b", "/a", "/"]
    assert list(tree.ancestors("/")) == []


def test_file_from_str():
    e = tree.file("hi", owner="you")
    assert e.data == b"hi"
    assert e.owner == "you"
    assert e.group == "you"
    assert not e.is_dir


def test_chown_keeps_content():
    e = tree.file("x", mode=0o755).chown("you")
    assert (e.owner, e.group, e.data, e.mode) == ("you", "you", b"x", 0o755)


def test_subtree():
    entries = {"/a": tree.directory(), "/a/x": tree.file("1"), "/ab": tree.file("2")}
    assert set(tree.subtree(entries, "/a")) == {"/a", "/a/x"}


def test_serialize_header_and_padding():
    data = tree.serialize({"/": tree.directory()})
    assert data.startswith(b"\x0d" + b"\x00" * 7 + b"strata-tree-1")
    assert len(data) % 8 == 0


def test_digest_ignores_location():
    """The same content under two roots digests the same."""
    a = {"/src": tree.directory(), "/src/f": tree.file("x")}
    b = {"/dst": tree.directory(), "/dst/f": tree.file("x")}
    assert tree.tree_digest(a, "/src") == tree.tree_digest(b, "/dst")


def test_digest_ownership_on_request():
    a = {"/d": tree.directory(), "/d/f": tree.file("x", owner="root")}
    b = {"/d": tree.directory(), "/d/f": tree.file("x", owner="you")}
    assert tree.tree_digest(a, "/d") == tree.tree_digest(b, "/d")
    assert tree.tree_digest(a, "/d", ownership=True) != tree.tree_digest(b, "/d", ownership=True)


def test_digest_sees_executable_bit():
    a = {"/f": tree.file("x", mode=0o644)}
    b = {"/f": tree.file("x", mode=0o755)}
    assert tree.tree_digest(a) != tree.tree_digest(b)


def test_load_directory(tmp_path):
    (tmp_path / "lib").mkdir()
    (tmp_path / "lib" / "x.rb").write_text("puts 1\n")
    (tmp_path / "deps.lock").write_text("{}")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref")
    entries = tree.load_directory(tmp_path)
    assert entries["/"].is_dir
    assert entries["/lib"].is_dir
    assert entries["/lib/x.rb"].data == b"puts 1\n"
    assert entries["/deps.lock"].data == b"{}"
    assert not any(p.startswith("/.git") for p in entries)


def test_load_directory_missing(tmp_path):
    with pytest.raises(NotADirectoryError):
        tree.load_directory(tmp_path / "nope")

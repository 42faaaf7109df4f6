"""Tests for whiteout naming and per-layer entry normalisation."""

from peel.models import FileEntry
from peel.utils.whiteout import dedupe_entries, normalize_path, to_entry


def test_normalize_path():
    assert normalize_path("./usr/bin/env") == "usr/bin/env"
    assert normalize_path("/etc/passwd") == "etc/passwd"
    assert normalize_path("a//b/./c") == "a/b/c"
    assert normalize_path("a\\b") == "a/b"
    assert normalize_path("./") == ""
    assert normalize_path("../../etc") == "etc"


def test_plain_entry():
    entry = to_entry("./usr/bin/env", 42)
    assert entry == FileEntry(path="usr/bin/env", size=42)
    assert entry.kind == "file"


def test_whiteout_entry():
    entry = to_entry("app/lib/.wh.a.so", 0)
    assert entry == FileEntry(path="app/lib/a.so", size=0, is_whiteout=True)
    assert entry.kind == "whiteout"


def test_whiteout_size_is_zero():
    assert to_entry(".wh.big", 999).size == 0


def test_opaque_marker():
    entry = to_entry("data/.wh..wh..opq", 0)
    assert entry == FileEntry(path="data", is_whiteout=True, is_opaque=True)
    assert entry.kind == "opaque"


def test_bookkeeping_names_skipped():
    assert to_entry(".wh..wh.aufs", 0) is None
    assert to_entry("dir/.wh..wh.orph", 0) is None


def test_root_opaque_and_empty_names_skipped():
    assert to_entry(".wh..wh..opq", 0) is None
    assert to_entry("./", 0) is None
    assert to_entry("dir/.wh.", 0) is None


def test_dedupe_later_plain_wins():
    entries = [FileEntry("a", 1), FileEntry("b", 2), FileEntry("a", 3)]
    assert dedupe_entries(entries) == (FileEntry("a", 3), FileEntry("b", 2))


def test_dedupe_plain_beats_whiteout():
    entries = [FileEntry("a", 5), FileEntry("a", is_whiteout=True)]
    assert dedupe_entries(entries) == (FileEntry("a", 5),)

    entries = [FileEntry("a", is_whiteout=True), FileEntry("a", 5)]
    assert dedupe_entries(entries) == (FileEntry("a", 5),)


def test_dedupe_opaque_beats_whiteout():
    entries = [
        FileEntry("d", is_whiteout=True, is_opaque=True),
        FileEntry("d", is_whiteout=True),
    ]
    assert dedupe_entries(entries) == (FileEntry("d", is_whiteout=True, is_opaque=True),)


def test_dedupe_sorts_by_path():
    entries = [FileEntry("z"), FileEntry("a/b"), FileEntry("a")]
    assert [e.path for e in dedupe_entries(entries)] == ["a", "a/b", "z"]

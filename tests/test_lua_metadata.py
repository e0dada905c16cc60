import os
import sys
import time

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cloudreader_sync.errors import DecodeError
from cloudreader_sync.utils.lua_metadata import (
    BundleMetadata, find_effective_entry, is_metadata_entry, parse_lua_table,
)

SAMPLE = """-- we can read Lua syntax here!
return {
    ["bookmarks"] = {
        [1] = {
            ["notes"] = "Chapter \\"one\\"",
            ["page"] = 12,
        },
    },
    ["doc_pages"] = 238,
    ["doc_path"] = "/mnt/onboard/library/Author/Book.epub",
    ["highlight"] = {},
    ["last_page"] = 38,
    ["percent_finished"] = 0.15966386554622,
    ["summary"] = {
        ["modified"] = "2024-01-01",
        ["status"] = "reading",
    },
    ["cre_dom_version"] = { 20240114 },
    ["night_mode"] = false,
    flat_key = -1.5e2,
}
"""


def test_parses_reader_metadata_file():
    table = parse_lua_table(SAMPLE)
    assert table["last_page"] == 38
    assert table["percent_finished"] == pytest.approx(0.15966386554622)
    assert table["bookmarks"][1]["notes"] == 'Chapter "one"'
    assert table["summary"]["status"] == "reading"
    assert table["cre_dom_version"] == {1: 20240114}
    assert table["night_mode"] is False
    assert table["highlight"] == {}
    assert table["flat_key"] == -150.0


def test_bundle_metadata_fields():
    meta = BundleMetadata.from_table(parse_lua_table(SAMPLE))
    assert meta.last_page == 38
    assert meta.doc_pages == 238
    assert meta.status == "reading"


def test_bundle_metadata_clamps_values():
    meta = BundleMetadata.from_table({"last_page": -4, "percent_finished": 1.7})
    assert meta.last_page == 0
    assert meta.percent_finished == 1.0

    meta = BundleMetadata.from_table({"last_page": "12", "percent_finished": True})
    assert meta.last_page == 0
    assert meta.percent_finished == 0.0


def test_long_strings_and_comments():
    table = parse_lua_table('return { --[[ block\ncomment ]] note = [[line one\nline two]], n = 0x1F }')
    assert table == {"note": "line one\nline two", "n": 31}


@pytest.mark.parametrize("text", [
    'return { ["a"] = 1',
    'return { ["a"] 1 }',
    'return { a = "unterminated }',
    'return { a = @ }',
    'return { } extra',
])
def test_malformed_input_raises(text):
    with pytest.raises(DecodeError):
        parse_lua_table(text)


def test_unreadable_file_yields_zeroed_metadata(tmp_path):
    bad = tmp_path / "metadata.epub.lua"
    bad.write_text("return { broken")
    assert BundleMetadata.from_file(bad) == BundleMetadata()
    assert BundleMetadata.from_file(tmp_path / "missing.lua") == BundleMetadata()


def test_metadata_entry_names():
    assert is_metadata_entry("metadata.epub.lua")
    assert is_metadata_entry("metadata.pdf.lua")
    assert not is_metadata_entry("metadata.epub.lua.old")
    assert not is_metadata_entry("custom_metadata.lua")
    assert not is_metadata_entry("metadata.lua.bak")


def test_effective_entry_is_most_recently_modified(tmp_path):
    bundle = tmp_path / "Book.sdr"
    bundle.mkdir()
    older = bundle / "metadata.pdf.lua"
    newer = bundle / "metadata.epub.lua"
    backup = bundle / "metadata.epub.lua.old"
    for path in (older, newer, backup):
        path.write_text("return {}")

    now = time.time()
    os.utime(older, (now - 100, now - 100))
    os.utime(newer, (now - 10, now - 10))
    os.utime(backup, (now, now))

    assert find_effective_entry(bundle) == newer
    assert find_effective_entry(tmp_path / "missing.sdr") is None

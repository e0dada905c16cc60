import io
import os
import sys
import tarfile
from unittest.mock import patch

import pytest
import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cloudreader_sync.sync_clients.bundle_sync_client import decide_action, remote_is_ahead
from cloudreader_sync.sync_clients.sync_client_interface import (
    Book, BundleAction, ServerBundleRecord,
)
from cloudreader_sync.utils.lua_metadata import BundleMetadata
from tests.utils.engine_factory import build_engine
from tests.utils.fake_server import FakeCloudReaderServer, make_bundle_archive, metadata_lua

NOW = 1_700_000_000


@pytest.fixture
def server():
    return FakeCloudReaderServer(now=NOW)


@pytest.fixture
def engine(tmp_path, server):
    with patch('requests.Session.request', side_effect=server.handle):
        engine = build_engine(tmp_path)
        engine.index.put(Book(id="C", title="C", path="Shelf/C.epub"))
        yield engine


def write_local_bundle(engine, name="Shelf/C.sdr", last_page=10, percent=0.1, mtime=NOW - 100, extra=None):
    bundle = engine.library_dir / name
    bundle.mkdir(parents=True, exist_ok=True)
    entry = bundle / "metadata.epub.lua"
    entry.write_text(metadata_lua(last_page, percent))
    for filename, text in (extra or {}).items():
        (bundle / filename).write_text(text)
    os.utime(entry, (mtime, mtime))
    return bundle, entry


@pytest.mark.parametrize("local_ts,remote_ts,expected", [
    (None, None, BundleAction.NONE),
    (100, None, BundleAction.UPLOAD),
    (None, 100, BundleAction.DOWNLOAD),
    (200, 100, BundleAction.UPLOAD),
    (100, 200, BundleAction.RESOLVE),
    (100, 100, BundleAction.NONE),
])
def test_decision_table(local_ts, remote_ts, expected):
    assert decide_action(local_ts, remote_ts) == expected


def test_remote_ahead_when_either_field_is_greater():
    local = BundleMetadata(last_page=50, percent_finished=0.5)
    assert remote_is_ahead(local, ServerBundleRecord("x", 1, last_page=51, percent_finished=0.1))
    assert remote_is_ahead(local, ServerBundleRecord("x", 1, last_page=1, percent_finished=0.6))
    assert not remote_is_ahead(local, ServerBundleRecord("x", 1, last_page=50, percent_finished=0.5))


def test_local_only_bundle_uploads_then_converges(engine, server):
    _, entry = write_local_bundle(engine, last_page=12, percent=0.2)

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert (result.uploaded, result.downloaded, result.errors) == (1, 0, 0)
    assert server.sdrs["C"]["last_page"] == 12
    with tarfile.open(fileobj=io.BytesIO(server.sdrs["C"]["data"]), mode="r:gz") as tar:
        assert "C.sdr/metadata.epub.lua" in tar.getnames()
    # Local entry carries the server's timestamp now
    assert int(os.stat(entry).st_mtime) == NOW

    second = engine.manager.bundle_sync.sync_all_bundles()
    assert (second.uploaded, second.downloaded, second.unchanged) == (0, 0, 1)
    assert len(server.requests_for("PUT", "/api/sync/sdr/C")) == 1


def test_local_newer_uploads(engine, server):
    server.put_sdr("C", make_bundle_archive("C.sdr", {"metadata.epub.lua": metadata_lua(1, 0.01)}), NOW - 500)
    write_local_bundle(engine, mtime=NOW - 100)

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert result.uploaded == 1
    assert result.actions["C"] == BundleAction.UPLOAD


def test_remote_only_bundle_downloads_and_is_stamped(engine, server):
    archive = make_bundle_archive("C.sdr", {"metadata.epub.lua": metadata_lua(30, 0.3)})
    server.put_sdr("C", archive, NOW - 50, last_page=30, percent_finished=0.3)

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert result.downloaded == 1
    entry = engine.library_dir / "Shelf" / "C.sdr" / "metadata.epub.lua"
    assert "last_page" in entry.read_text()
    assert int(os.stat(entry).st_mtime) == NOW - 50

    second = engine.manager.bundle_sync.sync_all_bundles()
    assert (second.uploaded, second.downloaded, second.unchanged) == (0, 0, 1)


def test_remote_newer_and_further_replaces_whole_directory(engine, server):
    bundle, _ = write_local_bundle(engine, last_page=10, percent=0.1, mtime=NOW - 1000,
                                   extra={"stale.txt": "old"})
    archive = make_bundle_archive("C.sdr", {"metadata.epub.lua": metadata_lua(80, 0.8)})
    server.put_sdr("C", archive, NOW - 10, last_page=80, percent_finished=0.8)

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert result.downloaded == 1
    assert not (bundle / "stale.txt").exists()
    assert BundleMetadata.from_file(bundle / "metadata.epub.lua").last_page == 80
    # No staging or backup directories left next to the bundle
    assert sorted(p.name for p in bundle.parent.iterdir()) == ["C.sdr"]


def test_remote_newer_but_behind_uploads_local(engine, server):
    write_local_bundle(engine, last_page=90, percent=0.9, mtime=NOW - 1000)
    archive = make_bundle_archive("C.sdr", {"metadata.epub.lua": metadata_lua(5, 0.05)})
    server.put_sdr("C", archive, NOW - 10, last_page=5, percent_finished=0.05)

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert (result.uploaded, result.downloaded) == (1, 0)
    assert server.sdrs["C"]["last_page"] == 90


def test_remote_bundle_without_index_entry_is_skipped(engine, server):
    archive = make_bundle_archive("Z.sdr", {"metadata.epub.lua": metadata_lua(1, 0.01)})
    server.put_sdr("Z", archive, NOW)

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert result.skipped == 1
    assert result.downloaded == 0
    assert server.requests_for("GET", "/api/sync/sdr/Z") == []


def test_backup_entries_are_ignored(engine, server):
    bundle = engine.library_dir / "Shelf" / "C.sdr"
    bundle.mkdir(parents=True)
    (bundle / "metadata.epub.lua.old").write_text(metadata_lua(1, 0.01))

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert result.uploaded == 0
    assert result.actions == {}


def test_unsafe_archive_rejected_and_local_untouched(engine, server):
    bundle, entry = write_local_bundle(engine, last_page=10, percent=0.1, mtime=NOW - 1000)
    original = entry.read_text()

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        data = b"pwned"
        info = tarfile.TarInfo("../../escape.txt")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    server.put_sdr("C", buf.getvalue(), NOW - 10, last_page=99, percent_finished=0.99)

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert result.errors == 1
    assert result.downloaded == 0
    assert entry.read_text() == original
    assert not (engine.library_dir / "escape.txt").exists()
    assert not (engine.library_dir.parent / "escape.txt").exists()
    assert sorted(p.name for p in bundle.parent.iterdir()) == ["C.sdr"]


def test_symlink_member_rejected(engine, server):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        link = tarfile.TarInfo("C.sdr/metadata.epub.lua")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/passwd"
        tar.addfile(link)
    server.put_sdr("C", buf.getvalue(), NOW)

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert result.errors == 1
    assert not (engine.library_dir / "Shelf" / "C.sdr").exists()


def test_bundle_list_failure_aborts(engine, server):
    server.fail[("GET", "/api/sync/sdr")] = requests.exceptions.ConnectionError("down")
    write_local_bundle(engine)

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert result.aborted
    assert server.requests_for("PUT", "/api/sync/sdr/C") == []


def test_network_failure_stops_the_cycle(engine, server):
    engine.index.put(Book(id="D", title="D", path="Shelf/D.epub"))
    write_local_bundle(engine, name="Shelf/C.sdr")
    write_local_bundle(engine, name="Shelf/D.sdr")
    server.fail[("PUT", "/api/sync/sdr/C")] = requests.exceptions.ConnectionError("gone")

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert result.aborted
    assert result.errors == 1
    assert server.requests_for("PUT", "/api/sync/sdr/D") == []


def test_http_failure_counts_and_continues(engine, server):
    from tests.utils.fake_server import FakeResponse

    engine.index.put(Book(id="D", title="D", path="Shelf/D.epub"))
    write_local_bundle(engine, name="Shelf/C.sdr")
    write_local_bundle(engine, name="Shelf/D.sdr")
    server.fail[("PUT", "/api/sync/sdr/C")] = FakeResponse(413, {"error": "Too large"})

    result = engine.manager.bundle_sync.sync_all_bundles()

    assert not result.aborted
    assert (result.uploaded, result.errors) == (1, 1)
    assert "D" in server.sdrs

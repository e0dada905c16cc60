import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cloudreader_sync.errors import HTTPError, NetworkError
from cloudreader_sync.sync_clients.progress_sync_client import ProgressSyncClient, derive_book_id
from cloudreader_sync.sync_clients.sync_client_interface import DocumentInfo, ProgressRecord


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def progress(api):
    return ProgressSyncClient(api)


def test_small_drift_does_not_prompt(progress):
    decision = progress.reconcile(ProgressRecord(percentage=40.0), ProgressRecord(percentage=41.5))
    assert decision.prompt is False
    assert decision.delta == pytest.approx(1.5)


def test_large_drift_prompts(progress):
    decision = progress.reconcile(ProgressRecord(percentage=40.0), ProgressRecord(percentage=43.0))
    assert decision.prompt is True


def test_drift_in_either_direction(progress):
    assert progress.reconcile(ProgressRecord(percentage=50.0), ProgressRecord(percentage=10.0)).prompt


def test_threshold_is_exclusive(progress):
    assert not progress.reconcile(ProgressRecord(percentage=40.0), ProgressRecord(percentage=42.0)).prompt


def test_threshold_configurable(progress):
    with patch.dict(os.environ, {"PROGRESS_PROMPT_THRESHOLD": "10"}):
        assert not progress.reconcile(ProgressRecord(percentage=40.0), ProgressRecord(percentage=45.0)).prompt


def test_no_remote_record_never_prompts(progress):
    decision = progress.reconcile(ProgressRecord(percentage=40.0), None)
    assert decision.prompt is False
    assert decision.remote is None


def test_push_success_and_failure(progress, api):
    record = ProgressRecord(current_page=5, total_pages=10, percentage=50.0)
    assert progress.push("abc", record) is True
    api.put_progress.assert_called_once_with("abc", record)

    api.put_progress.side_effect = HTTPError(500)
    assert progress.push("abc", record) is False


def test_pull_swallows_failures(progress, api):
    api.get_progress.return_value = None
    assert progress.pull("abc") is None

    api.get_progress.side_effect = NetworkError("offline")
    assert progress.pull("abc") is None


def test_record_from_document_prefers_percent_finished():
    record = ProgressRecord.from_document(current_page=10, total_pages=200, percent_finished=0.995)
    assert record.percentage == pytest.approx(99.5)
    assert record.status == "complete"

    record = ProgressRecord.from_document(current_page=50, total_pages=200)
    assert record.percentage == 25.0
    assert record.status == "reading"

    assert ProgressRecord.from_document(0, 0).percentage == 0.0


def test_document_info_progress():
    doc = DocumentInfo(file_path="/books/a.epub", current_page=3, total_pages=4)
    assert doc.progress().percentage == 75.0


def test_derive_book_id_prefers_partial_md5():
    assert derive_book_id("/library/A.epub", "0123456789abcdef") == "0123456789abcdef"


def test_derive_book_id_hashes_file_name():
    # h = (h*31 + byte) % 2147483647 over b"a" and b"ab"
    assert derive_book_id("/some/dir/a") == f"{97:08x}"
    assert derive_book_id("ab") == f"{97 * 31 + 98:08x}"
    assert derive_book_id("/one/Book.epub") == derive_book_id("/other/Book.epub")
    assert len(derive_book_id("/x/A very long title with many characters.epub")) == 8

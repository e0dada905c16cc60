import logging
import os
from typing import Optional

from cloudreader_sync.errors import SyncError
from cloudreader_sync.sync_clients.sync_client_interface import ProgressDecision, ProgressRecord
from cloudreader_sync.utils.config_loader import get_float

logger = logging.getLogger(__name__)

FILENAME_HASH_MODULUS = 2147483647


def derive_book_id(file_path: str, partial_md5: Optional[str] = None) -> str:
    """
    Progress key for a document: the host's partial MD5 when it has one,
    otherwise an 8-hex-digit hash of the bare file name.
    """
    if partial_md5:
        return partial_md5

    filename = os.path.basename((file_path or "").replace("\\", "/")) or (file_path or "")
    h = 0
    for byte in filename.encode("utf-8"):
        h = (h * 31 + byte) % FILENAME_HASH_MODULUS
    return f"{h:08x}"


class ProgressSyncClient:
    def __init__(self, api_client):
        self.api = api_client

    @property
    def prompt_threshold(self) -> float:
        return get_float("PROGRESS_PROMPT_THRESHOLD")

    def push(self, book_id, record: ProgressRecord) -> bool:
        try:
            self.api.put_progress(book_id, record)
        except SyncError as e:
            logger.error(f"[{book_id}] progress push failed: {e}")
            return False
        logger.info(f"📤 [{book_id}] progress pushed: {record.percentage:.1f}% ({record.status})")
        return True

    def pull(self, book_id) -> Optional[ProgressRecord]:
        """Remote record, or None when the server has none or the fetch failed."""
        try:
            record = self.api.get_progress(book_id)
        except SyncError as e:
            logger.warning(f"[{book_id}] progress pull failed: {e}")
            return None
        if record is None:
            logger.debug(f"[{book_id}] no remote progress")
        return record

    def reconcile(self, local: ProgressRecord, remote: Optional[ProgressRecord]) -> ProgressDecision:
        if remote is None:
            return ProgressDecision(local=local, remote=None)
        delta = abs(remote.percentage - local.percentage)
        return ProgressDecision(local=local, remote=remote, delta=delta, prompt=delta > self.prompt_threshold)

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Optional

from cloudreader_sync.errors import (
    CodecError, FilesystemError, NetworkError, SyncError, UnsafePathError,
)
from cloudreader_sync.sync_clients.sync_client_interface import (
    BundleAction, BundleSyncResult, LocalBundle, ServerBundleRecord,
)
from cloudreader_sync.utils.bundle_codec import archive_size, pack_bundle, unpack_bundle
from cloudreader_sync.utils.lua_metadata import BundleMetadata, entry_timestamp, find_effective_entry
from cloudreader_sync.utils.path_utils import bundle_path_for, resolve_book_path

logger = logging.getLogger(__name__)


def decide_action(local_ts: Optional[int], remote_ts: Optional[int]) -> BundleAction:
    """Timestamp decision for one book. None means that side has no bundle."""
    if local_ts is None and remote_ts is None:
        return BundleAction.NONE
    if remote_ts is None:
        return BundleAction.UPLOAD
    if local_ts is None:
        return BundleAction.DOWNLOAD
    if local_ts > remote_ts:
        return BundleAction.UPLOAD
    if remote_ts > local_ts:
        return BundleAction.RESOLVE
    return BundleAction.NONE


def remote_is_ahead(local: BundleMetadata, remote: ServerBundleRecord) -> bool:
    """Newer remote timestamp only wins if it also read further."""
    return remote.last_page > local.last_page or remote.percent_finished > local.percent_finished


class BundleSyncClient:
    """
    Whole-bundle, last-writer-wins reconciliation of reading-state bundles.

    After every transfer the local effective entry is stamped with the server's
    `updated_at`, so a second pass over unchanged data does nothing.
    """

    def __init__(self, api_client, book_index, settings_store):
        self.api = api_client
        self.index = book_index
        self.settings = settings_store

    def scan_local_bundles(self, result: BundleSyncResult = None) -> Dict[str, LocalBundle]:
        bundles = {}
        for book in self.index:
            try:
                bundle_path = bundle_path_for(resolve_book_path(self.settings.library_dir, book.path))
            except UnsafePathError as e:
                logger.error(f"Skipping bundle for {book.id}: {e}")
                if result is not None:
                    result.errors += 1
                continue

            entry = find_effective_entry(bundle_path)
            if entry is None:
                continue
            bundles[book.id] = LocalBundle(
                book_id=book.id,
                bundle_path=bundle_path,
                entry_path=entry,
                updated_at=entry_timestamp(entry),
            )
        return bundles

    def sync_all_bundles(self) -> BundleSyncResult:
        logger.info("🔄 Syncing reading-state bundles...")
        result = BundleSyncResult()

        try:
            remote = self.api.get_bundle_records()
        except SyncError as e:
            logger.warning(f"Failed to get bundle list from server: {e}")
            return BundleSyncResult(aborted=True, message=str(e))

        local = self.scan_local_bundles(result)

        for book_id in sorted(set(local) | set(remote)):
            local_bundle = local.get(book_id)
            record = remote.get(book_id)
            action = decide_action(
                local_bundle.updated_at if local_bundle else None,
                record.updated_at if record else None,
            )

            if action == BundleAction.RESOLVE:
                metadata = BundleMetadata.from_file(local_bundle.entry_path)
                action = BundleAction.DOWNLOAD if remote_is_ahead(metadata, record) else BundleAction.UPLOAD
                logger.debug(f"[{book_id}] remote newer, local page {metadata.last_page} vs remote {record.last_page} -> {action.value}")

            result.actions[book_id] = action
            try:
                self._apply(book_id, action, local_bundle, record, result)
            except NetworkError as e:
                result.errors += 1
                result.aborted = True
                result.message = str(e)
                logger.error(f"[{book_id}] network failure, stopping bundle sync: {e}")
                break
            except SyncError as e:
                result.errors += 1
                logger.error(f"[{book_id}] bundle {action.value} failed: {e}")

        if result.changed:
            logger.info(f"✅ Bundle sync done, uploaded: {result.uploaded} downloaded: {result.downloaded}")
        else:
            logger.debug("Bundle sync done, no changes")
        return result

    def _apply(self, book_id, action, local_bundle, record, result):
        if action == BundleAction.NONE:
            result.unchanged += 1
        elif action == BundleAction.UPLOAD:
            self.upload(local_bundle)
            result.uploaded += 1
        elif action == BundleAction.DOWNLOAD:
            if local_bundle is not None:
                target = local_bundle.bundle_path
            else:
                book = self.index.get(book_id)
                if book is None:
                    logger.debug(f"[{book_id}] remote bundle has no index entry, skipping")
                    result.actions[book_id] = BundleAction.NONE
                    result.skipped += 1
                    return
                target = bundle_path_for(resolve_book_path(self.settings.library_dir, book.path))
            self.download(book_id, target, record)
            result.downloaded += 1

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def upload(self, bundle: LocalBundle):
        fd, archive = tempfile.mkstemp(prefix=f"cloudreader_sdr_{bundle.book_id}_", suffix=".tar.gz")
        os.close(fd)
        try:
            pack_bundle(bundle.bundle_path, archive)
            logger.debug(f"[{bundle.book_id}] uploading {archive_size(archive)} bytes")
            with open(archive, "rb") as f:
                data = f.read()
            self.api.upload_bundle(bundle.book_id, data)
        except OSError as e:
            raise FilesystemError(f"Cannot read bundle archive: {e}") from e
        finally:
            os.remove(archive)

        logger.info(f"⬆️ Uploaded bundle for {bundle.book_id}")
        self._stamp_from_server(bundle)

    def _stamp_from_server(self, bundle: LocalBundle):
        try:
            record = self.api.get_bundle_record(bundle.book_id)
        except SyncError as e:
            logger.warning(f"[{bundle.book_id}] could not read back bundle record: {e}")
            return
        if record is None:
            logger.warning(f"[{bundle.book_id}] server has no record right after upload")
            return
        try:
            stamp_entry(bundle.entry_path, record.updated_at)
        except OSError as e:
            logger.warning(f"[{bundle.book_id}] could not stamp {bundle.entry_path.name}: {e}")

    def download(self, book_id, bundle_path: Path, record: ServerBundleRecord):
        """Fetch the remote bundle and swap it in for bundle_path as a whole directory."""
        parent = bundle_path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Cannot create {parent}: {e}") from e

        fd, archive = tempfile.mkstemp(prefix=f"cloudreader_sdr_{book_id}_", suffix=".tar.gz")
        staging = None
        try:
            with os.fdopen(fd, "wb") as sink:
                self.api.download_bundle(book_id, sink)

            staging = Path(tempfile.mkdtemp(prefix=f".{bundle_path.name}.staging-", dir=str(parent)))
            extracted = unpack_bundle(archive, staging)

            entry = find_effective_entry(extracted)
            if entry is None:
                raise CodecError("Downloaded bundle has no metadata entry")
            stamp_entry(entry, record.updated_at)

            replace_directory(extracted, bundle_path)
        except OSError as e:
            raise FilesystemError(f"Bundle download failed for {book_id}: {e}") from e
        finally:
            os.remove(archive)
            if staging is not None and staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"⬇️ Downloaded bundle for {book_id}")


def stamp_entry(entry_path, updated_at: int):
    st = os.stat(entry_path)
    os.utime(entry_path, (st.st_atime, int(updated_at)))


def replace_directory(source: Path, target: Path):
    """Move source to target, restoring the previous target if the swap fails."""
    backup = None
    if target.exists():
        backup = target.with_name(f".{target.name}.previous")
        if backup.exists():
            shutil.rmtree(backup)
        target.rename(backup)
    try:
        source.rename(target)
    except OSError:
        if backup is not None:
            backup.rename(target)
        raise
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)

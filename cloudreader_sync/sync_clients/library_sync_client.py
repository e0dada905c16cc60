import dataclasses
import logging
from pathlib import Path

from cloudreader_sync.errors import SyncError, UnsafePathError
from cloudreader_sync.sync_clients.sync_client_interface import LibrarySyncResult
from cloudreader_sync.utils.logging_utils import sanitize_log_data
from cloudreader_sync.utils.path_utils import file_size, resolve_book_path

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 50


class LibrarySyncClient:
    """
    Reconciles the server manifest with the local library.

    Full sync rebuilds the BookIndex from the manifest. The auto path only adds
    or updates entries, so a partial or transient manifest never drops local
    knowledge.
    """

    def __init__(self, api_client, book_index, placeholder_service, settings_store):
        self.api = api_client
        self.index = book_index
        self.placeholders = placeholder_service
        self.settings = settings_store

    def sync_library(self) -> LibrarySyncResult:
        return self._sync(full=True)

    def auto_sync(self) -> LibrarySyncResult:
        return self._sync(full=False)

    def _sync(self, full: bool) -> LibrarySyncResult:
        label = "Sync" if full else "Auto-sync"
        logger.info(f"📚 {label}: starting, library_dir = {self.settings.library_dir}")

        try:
            books = self.api.get_library()
        except SyncError as e:
            logger.error(f"{label}: manifest fetch failed: {e}")
            return LibrarySyncResult(aborted=True, message=str(e))

        if books is None:
            logger.warning(f"{label}: no books in response")
            return LibrarySyncResult(aborted=True, message="No books found on server.")

        try:
            self.settings.ensure_library_dir()
        except OSError as e:
            logger.error(f"{label}: cannot create library dir: {e}")
            return LibrarySyncResult(aborted=True, message=str(e))

        result = LibrarySyncResult(total=len(books))
        accepted = []
        for i, book in enumerate(books, start=1):
            stored = self._process_book(book, full, result)
            if stored is not None:
                accepted.append(stored)
            if i % PROGRESS_LOG_EVERY == 0:
                logger.info(f"{label}: {i}/{result.total}")

        if full:
            self.index.replace(accepted)
        else:
            for book in accepted:
                self.index.put(book)

        if self.index.dirty:
            self.index.save()

        logger.info(f"✅ {label} done. Created: {result.created} Skipped: {result.skipped} Errors: {result.errors}")
        return result

    def _process_book(self, book, full, result: LibrarySyncResult):
        """Returns the Book to index (path in on-disk form), or None on failure."""
        logger.debug(f"Processing book {book.id}: {sanitize_log_data(book.path)}")
        try:
            full_path = resolve_book_path(self.settings.library_dir, book.path)
            rel_path = full_path.relative_to(Path(self.settings.library_dir).resolve()).as_posix()
        except UnsafePathError as e:
            result.errors += 1
            logger.error(f"Rejected manifest path for {book.id}: {e}")
            return None
        if rel_path != book.path:
            logger.debug(f"Manifest path {sanitize_log_data(book.path)} stored as {sanitize_log_data(rel_path)}")
            book = dataclasses.replace(book, path=rel_path)

        # Auto path skips the placeholder call entirely for anything already on disk
        if not full and file_size(full_path) > 0:
            result.skipped += 1
            return book

        try:
            ok, was_created = self.placeholders.create_placeholder(book)
        except SyncError as e:
            ok, was_created = False, False
            logger.debug(f"Placeholder error for {book.id}: {e}")

        if not ok:
            result.errors += 1
            logger.error(f"Failed to create placeholder for {sanitize_log_data(book.path)}")
            return None

        if was_created:
            result.created += 1
        else:
            result.skipped += 1
        return book

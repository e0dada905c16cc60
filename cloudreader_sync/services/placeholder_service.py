import logging
import os
import tempfile
from pathlib import Path

from cloudreader_sync.errors import FilesystemError, SyncError
from cloudreader_sync.utils.config_loader import get_int
from cloudreader_sync.utils.path_utils import file_size, relative_to_library, resolve_book_path

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"


def placeholder_max_size() -> int:
    return get_int("PLACEHOLDER_MAX_SIZE")


class PlaceholderService:
    """
    Creates small stand-in files for books that are not on the device yet and
    swaps them for the real content on demand.

    Downloads land in a hidden temp file next to the target and are moved into
    place with os.replace, so the canonical path only ever holds a complete file.
    """

    def __init__(self, api_client, book_index, settings_store):
        self.api = api_client
        self.index = book_index
        self.settings = settings_store

    @property
    def library_dir(self) -> Path:
        return self.settings.library_dir

    def create_placeholder(self, book):
        """
        Returns (ok, was_created). A non-empty file already at the path is
        (True, False) with no network I/O. Raises UnsafePathError for manifest
        paths outside the library.
        """
        full_path = resolve_book_path(self.library_dir, book.path)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create directory for {book.path}: {e}")
            return False, False

        if file_size(full_path) > 0:
            logger.debug(f"File already exists: {full_path}")
            return True, False

        max_size = placeholder_max_size()
        try:
            written = self._download_to(
                full_path,
                lambda sink: self.api.download_placeholder(
                    book.id, sink,
                    width=get_int("PLACEHOLDER_WIDTH"),
                    quality=get_int("PLACEHOLDER_QUALITY"),
                ),
                max_size=max_size,
            )
        except SyncError as e:
            logger.error(f"Failed to download placeholder for '{book.title}': {e}")
            return False, False

        logger.info(f"📄 Created placeholder: {book.path} ({written} bytes)")
        return True, True

    def is_placeholder(self, file_path):
        """Returns (True, book_id) when file_path is a recognized placeholder, else (False, None)."""
        file_path = Path(file_path)
        size = file_size(file_path)
        if not file_path.is_file() or size > placeholder_max_size():
            return False, None

        rel_path = relative_to_library(self.library_dir, file_path)
        if not rel_path:
            return False, None

        book = self.index.find_by_path(rel_path)
        if book is not None:
            logger.info(f"Detected placeholder, book_id = {book.id}")
            return True, book.id

        try:
            with open(file_path, "rb") as f:
                header = f.read(len(PDF_MAGIC))
        except OSError:
            return False, None
        if header == PDF_MAGIC:
            logger.warning(f"Small PDF not in index, may be orphaned placeholder: {file_path}")
        return False, None

    def materialize(self, file_path, book_id) -> bool:
        """Replace the placeholder at file_path with the full book content."""
        book = self.index.get(book_id)
        if book is None:
            logger.warning(f"Book {book_id} not found in index. Try syncing library.")
            return False

        logger.info(f"⬇️ Downloading: {book.title}")
        try:
            written = self._download_to(Path(file_path), lambda sink: self.api.download_book(book.id, sink))
        except SyncError as e:
            logger.error(f"Download failed for '{book.title}': {e}")
            return False

        logger.info(f"✅ Downloaded '{book.title}' ({written} bytes)")
        return True

    def _download_to(self, target: Path, fetch, max_size=None) -> int:
        """Stream `fetch(sink)` into a temp file beside target, validate, then replace target."""
        try:
            fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
        except OSError as e:
            raise FilesystemError(f"Cannot create temp file in {target.parent}: {e}") from e

        try:
            try:
                with os.fdopen(fd, "wb") as sink:
                    fetch(sink)
            except OSError as e:
                raise FilesystemError(f"Cannot write {target.name}: {e}") from e
            written = file_size(temp_name)
            if written == 0:
                raise FilesystemError("Server returned an empty file")
            if max_size is not None and written > max_size:
                raise FilesystemError(f"Placeholder too large ({written} > {max_size} bytes)")
            try:
                os.replace(temp_name, target)
            except OSError as e:
                raise FilesystemError(f"Cannot move download into place: {e}") from e
            return written
        finally:
            if os.path.exists(temp_name):
                os.remove(temp_name)

import os
from pathlib import Path, PurePosixPath

from cloudreader_sync.errors import UnsafePathError

BUNDLE_SUFFIX = ".sdr"


def resolve_book_path(library_dir, rel_path: str) -> Path:
    """
    Join a manifest path onto the library root.

    Absolute paths, `..` components and anything that resolves outside the
    root raise UnsafePathError.
    """
    if not rel_path or not str(rel_path).strip():
        raise UnsafePathError("Empty library path")

    normalized = str(rel_path).replace("\\", "/")
    parts = PurePosixPath(normalized).parts
    drive = parts[0] if parts else ""
    if normalized.startswith("/") or (len(drive) == 2 and drive[1] == ":"):
        raise UnsafePathError(f"Absolute library path rejected: {rel_path}")
    if any(part == ".." for part in parts):
        raise UnsafePathError(f"Parent traversal rejected: {rel_path}")

    root = Path(library_dir).resolve()
    candidate = (root / Path(*parts)).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        raise UnsafePathError(f"Path escapes library root: {rel_path}")
    if candidate == root:
        raise UnsafePathError(f"Path points at the library root: {rel_path}")
    return candidate


def relative_to_library(library_dir, path) -> str:
    """Relative posix path of `path` under the library root, or None when outside."""
    root = Path(library_dir).resolve()
    try:
        return Path(path).resolve().relative_to(root).as_posix()
    except ValueError:
        return None


def bundle_path_for(book_path) -> Path:
    # book.epub -> book.sdr; a name without extension just gains the suffix
    book_path = Path(book_path)
    return book_path.with_name(f"{book_path.stem if book_path.suffix else book_path.name}{BUNDLE_SUFFIX}")


def file_size(path) -> int:
    """Size in bytes, 0 when the file is missing or not a regular file."""
    try:
        return os.path.getsize(path) if os.path.isfile(path) else 0
    except OSError:
        return 0

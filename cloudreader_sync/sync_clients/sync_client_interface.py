from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

PROGRESS_COMPLETE_PERCENT = 99.0


@dataclass
class Book:
    id: str
    title: str
    path: str

    @classmethod
    def from_payload(cls, data: dict) -> Optional["Book"]:
        """Build a Book from a manifest entry; entries without id or path are dropped."""
        if not isinstance(data, dict):
            return None
        book_id = data.get('id')
        path = data.get('path')
        if book_id is None or not path:
            return None
        return cls(id=str(book_id), title=str(data.get('title') or ''), path=str(path))

    def to_payload(self) -> dict:
        return {"id": self.id, "title": self.title, "path": self.path}


@dataclass
class Session:
    token: str = ""
    user_id: str = ""
    username: str = ""

    @property
    def is_active(self) -> bool:
        return bool(self.token)


@dataclass
class ServerBundleRecord:
    book_id: str
    updated_at: int
    last_page: int = 0
    percent_finished: float = 0.0

    @classmethod
    def from_payload(cls, data: dict) -> Optional["ServerBundleRecord"]:
        if not isinstance(data, dict) or data.get('book_id') is None:
            return None
        try:
            updated_at = int(data.get('updated_at'))
        except (TypeError, ValueError):
            return None
        try:
            last_page = int(data.get('last_page') or 0)
        except (TypeError, ValueError):
            last_page = 0
        try:
            percent = float(data.get('percent_finished') or 0.0)
        except (TypeError, ValueError):
            percent = 0.0
        return cls(
            book_id=str(data['book_id']),
            updated_at=updated_at,
            last_page=max(last_page, 0),
            percent_finished=percent,
        )


@dataclass
class LocalBundle:
    """A bundle directory on disk together with its effective metadata entry."""
    book_id: str
    bundle_path: Path
    entry_path: Path
    updated_at: int


@dataclass
class ProgressRecord:
    current_page: int = 0
    total_pages: int = 0
    percentage: float = 0.0
    status: str = "reading"

    def __post_init__(self):
        self.status = "complete" if self.percentage >= PROGRESS_COMPLETE_PERCENT else "reading"

    @classmethod
    def from_document(cls, current_page: int, total_pages: int,
                      percent_finished: Optional[float] = None) -> "ProgressRecord":
        """
        Build a record from what the reader knows about an open document.

        percent_finished is the reader's own 0..1 fraction; when present it wins
        over the page ratio (reflowable documents renumber pages).
        """
        current_page = current_page or 0
        total_pages = total_pages or 0
        percentage = (current_page / total_pages * 100) if total_pages > 0 else 0.0
        if percent_finished is not None:
            percentage = percent_finished * 100
        return cls(current_page=current_page, total_pages=total_pages, percentage=percentage)

    @classmethod
    def from_payload(cls, data) -> Optional["ProgressRecord"]:
        if not isinstance(data, dict) or data.get('percentage') is None:
            return None
        try:
            percentage = float(data['percentage'])
        except (TypeError, ValueError):
            return None
        return cls(
            current_page=int(data.get('current_page') or 0),
            total_pages=int(data.get('total_pages') or 0),
            percentage=percentage,
        )

    def to_payload(self) -> dict:
        return {
            "current_page": self.current_page,
            "total_pages": self.total_pages,
            "percentage": self.percentage,
            "status": self.status,
        }


@dataclass
class ProgressDecision:
    local: ProgressRecord
    remote: Optional[ProgressRecord]
    delta: float = 0.0
    prompt: bool = False


class BundleAction(Enum):
    NONE = "none"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    # remote is newer: settle by comparing last_page/percent_finished
    RESOLVE = "resolve"


@dataclass
class LibrarySyncResult:
    created: int = 0
    skipped: int = 0
    errors: int = 0
    total: int = 0
    aborted: bool = False
    message: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "total": self.total,
            "aborted": self.aborted,
            "message": self.message,
        }


@dataclass
class BundleSyncResult:
    uploaded: int = 0
    downloaded: int = 0
    unchanged: int = 0
    skipped: int = 0
    errors: int = 0
    aborted: bool = False
    message: Optional[str] = None
    actions: dict = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.uploaded or self.downloaded)

    def as_dict(self) -> dict:
        return {
            "uploaded": self.uploaded,
            "downloaded": self.downloaded,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "errors": self.errors,
            "aborted": self.aborted,
            "message": self.message,
        }


@dataclass
class DocumentInfo:
    """What the host reader reports about an open document."""
    file_path: str
    current_page: int = 0
    total_pages: int = 0
    percent_finished: Optional[float] = None
    partial_md5: Optional[str] = None

    def progress(self) -> ProgressRecord:
        return ProgressRecord.from_document(self.current_page, self.total_pages, self.percent_finished)


@dataclass
class HostHooks:
    """Callbacks into the host reading application. Every hook is optional."""
    notify: Optional[Callable[[str], None]] = None
    # (local, remote) -> True to jump to the remote position
    confirm_progress_jump: Optional[Callable[[ProgressRecord, ProgressRecord], bool]] = None
    goto_page: Optional[Callable[[int], None]] = None

import logging
from typing import Dict, Iterable, Iterator, Optional

from cloudreader_sync.db.models import IndexedBook
from cloudreader_sync.sync_clients.sync_client_interface import Book

logger = logging.getLogger(__name__)


class BookIndex:
    """
    In-memory id -> Book mapping backed by the `books` table.

    Only the library syncer mutates it. Changes stay in memory until `save()`,
    which writes the whole mapping in one transaction.
    """

    def __init__(self, database_service):
        self.db = database_service
        self._books: Dict[str, Book] = {}
        self._by_path: Dict[str, str] = {}
        self.dirty = False

    def load(self):
        rows = self.db.get_all_books()
        self._books = {}
        self._by_path = {}
        for row in rows:
            self._store(Book(id=row.book_id, title=row.title or '', path=row.path))
        self.dirty = False
        logger.info(f"📚 Loaded {len(self._books)} books from index")
        return self

    def save(self):
        count = self.db.replace_books(
            IndexedBook(book_id=b.id, title=b.title, path=b.path) for b in self._books.values()
        )
        self.dirty = False
        logger.debug(f"Book index saved ({count} entries)")

    def _store(self, book: Book):
        previous = self._books.get(book.id)
        if previous is not None and self._by_path.get(previous.path) == book.id:
            del self._by_path[previous.path]
        self._books[book.id] = book
        self._by_path[book.path] = book.id

    def put(self, book: Book):
        if self._books.get(book.id) != book:
            self._store(book)
            self.dirty = True

    def replace(self, books: Iterable[Book]):
        self._books = {}
        self._by_path = {}
        for book in books:
            self._store(book)
        self.dirty = True

    def get(self, book_id) -> Optional[Book]:
        return self._books.get(str(book_id))

    def find_by_path(self, rel_path: str) -> Optional[Book]:
        book_id = self._by_path.get(rel_path)
        return self._books.get(book_id) if book_id is not None else None

    def __contains__(self, book_id):
        return str(book_id) in self._books

    def __len__(self):
        return len(self._books)

    def __iter__(self) -> Iterator[Book]:
        return iter(list(self._books.values()))

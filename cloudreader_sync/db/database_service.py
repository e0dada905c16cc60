"""
SQLAlchemy database service for cloudreader-sync.
Settings are a plain key/value table; the BookIndex lives in `books`.
"""

import io
import logging
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, List

from .models import Base, DatabaseManager, IndexedBook, Setting

logger = logging.getLogger(__name__)


class DatabaseService:
    """
    SQLAlchemy-backed store. Every public method runs in its own transaction,
    so a caller that writes several keys at once should use `set_settings`.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_manager = DatabaseManager(str(self.db_path))

        # Run Alembic migrations to ensure schema is up to date
        self._run_alembic_migrations()

        # Ensure all tables exist (covers installs without alembic.ini)
        Base.metadata.create_all(self.db_manager.engine)

    def _run_alembic_migrations(self):
        """Run Alembic migrations to ensure database schema is up to date."""
        try:
            from alembic import command
            from alembic.config import Config

            project_root = Path(__file__).parent.parent.parent
            alembic_cfg_path = project_root / "alembic.ini"

            if not alembic_cfg_path.exists():
                logger.debug("alembic.ini not found, skipping migrations")
                return

            alembic_cfg = Config(str(alembic_cfg_path))
            alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
            alembic_cfg.set_main_option("sqlalchemy.url", f"sqlite:///{self.db_path}")
            alembic_cfg.attributes['output_buffer'] = io.StringIO()

            alembic_logger = logging.getLogger('alembic')
            original_level = alembic_logger.level
            alembic_logger.setLevel(logging.WARNING)
            try:
                command.upgrade(alembic_cfg, "head")
                logger.debug("Database migrations completed successfully")
            finally:
                alembic_logger.setLevel(original_level)

        except Exception as e:
            logger.error(f"Alembic migration failed: {e}")
            logger.debug(f"Migration error details: {traceback.format_exc()}")

    @contextmanager
    def get_session(self):
        """Context manager for database sessions with automatic commit/rollback."""
        session = self.db_manager.get_session()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def close(self):
        self.db_manager.close()

    # Setting operations
    def set_settings(self, values: dict) -> None:
        """Write several settings in one transaction."""
        with self.get_session() as session:
            for key, value in values.items():
                stored = str(value) if value is not None else None
                existing = session.query(Setting).filter(Setting.key == key).first()
                if existing:
                    existing.value = stored
                else:
                    session.add(Setting(key=key, value=stored))

    def get_all_settings(self) -> dict:
        """Get all settings as a dictionary."""
        with self.get_session() as session:
            return {s.key: s.value for s in session.query(Setting).all()}

    # Book index operations
    def get_all_books(self) -> List[IndexedBook]:
        with self.get_session() as session:
            books = session.query(IndexedBook).all()
            for book in books:
                session.expunge(book)
            return books

    def replace_books(self, books: Iterable[IndexedBook]) -> int:
        """Replace the whole index in one transaction. Returns the new row count."""
        count = 0
        with self.get_session() as session:
            session.query(IndexedBook).delete()
            for book in books:
                session.add(IndexedBook(book_id=book.book_id, title=book.title, path=book.path))
                count += 1
        return count

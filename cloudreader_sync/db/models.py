"""
SQLAlchemy ORM models for the cloudreader-sync local store.
"""

from sqlalchemy import create_engine, event, Column, String, Text
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class Setting(Base):
    """
    Setting model storing both the engine state (server_url, token, ...)
    and the tunables bootstrapped by ConfigLoader.
    """
    __tablename__ = 'settings'

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=True)

    def __init__(self, key: str, value: str = None):
        self.key = key
        self.value = value

    def __repr__(self):
        return f"<Setting(key='{self.key}', value='{self.value}')>"


class IndexedBook(Base):
    """
    One BookIndex entry: the manifest identity of a book and its path
    relative to the library root.
    """
    __tablename__ = 'books'

    book_id = Column(String(255), primary_key=True)
    title = Column(String(1000), default='')
    path = Column(String(2000), nullable=False, index=True)

    def __init__(self, book_id: str, title: str = '', path: str = ''):
        self.book_id = book_id
        self.title = title
        self.path = path

    def __repr__(self):
        return f"<IndexedBook(book_id='{self.book_id}', path='{self.path}')>"


class DatabaseManager:
    """
    Database manager handling SQLAlchemy engine and session management.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.engine = create_engine(
            f'sqlite:///{db_path}',
            echo=False,
            connect_args={'timeout': 30, 'check_same_thread': False}
        )

        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

        self.SessionLocal = sessionmaker(bind=self.engine)

    def get_session(self):
        """Get a new database session."""
        return self.SessionLocal()

    def close(self):
        """Close the database engine."""
        self.engine.dispose()

"""
Database initialization utilities.
"""

import logging
from pathlib import Path

from .database_service import DatabaseService

logger = logging.getLogger(__name__)


def initialize_database(data_dir: str = "data") -> DatabaseService:
    """
    Initialize the database. This should be called once on application startup.

    Args:
        data_dir: Directory holding database.db

    Returns:
        DatabaseService: Configured database service instance
    """
    db_path = Path(data_dir) / "database.db"
    logger.info(f"Initializing database at {db_path}")
    return DatabaseService(str(db_path))

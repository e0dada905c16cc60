"""
Durable engine state: server URL, session, auto-sync flag and library directory.

Values live in memory between well-defined save points; nothing is flushed
mid-cycle. `save()` writes every key in one transaction.
"""

import logging
import os
from pathlib import Path

from cloudreader_sync.sync_clients.sync_client_interface import Session
from cloudreader_sync.utils.config_loader import get_data_dir

logger = logging.getLogger(__name__)

KEY_SERVER_URL = 'server_url'
KEY_USERNAME = 'username'
KEY_TOKEN = 'token'
KEY_USER_ID = 'user_id'
KEY_AUTO_SYNC = 'auto_sync'
KEY_LIBRARY_DIR = 'library_dir'

ENGINE_KEYS = (KEY_SERVER_URL, KEY_USERNAME, KEY_TOKEN, KEY_USER_ID, KEY_AUTO_SYNC, KEY_LIBRARY_DIR)


def _parse_bool(value, default=True):
    if value is None or value == "":
        return default
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def default_library_dir() -> Path:
    configured = os.environ.get("LIBRARY_DIR")
    if configured and os.path.isabs(configured):
        return Path(configured)
    return get_data_dir() / "library"


class SettingsStore:
    def __init__(self, database_service):
        self.db = database_service
        self.server_url = ""
        self.session = Session()
        self.auto_sync = True
        self.library_dir = default_library_dir()
        self.load()

    def load(self):
        stored = self.db.get_all_settings()
        self.server_url = stored.get(KEY_SERVER_URL) or ""
        self.session = Session(
            token=stored.get(KEY_TOKEN) or "",
            user_id=stored.get(KEY_USER_ID) or "",
            username=stored.get(KEY_USERNAME) or "",
        )
        self.auto_sync = _parse_bool(stored.get(KEY_AUTO_SYNC), default=True)

        # Only an absolute stored library_dir is honoured
        saved_dir = stored.get(KEY_LIBRARY_DIR)
        if saved_dir and os.path.isabs(saved_dir):
            self.library_dir = Path(saved_dir)
        else:
            self.library_dir = default_library_dir()
        logger.info(f"Library dir: {self.library_dir}")

    def save(self):
        self.db.set_settings({
            KEY_SERVER_URL: self.server_url,
            KEY_USERNAME: self.session.username,
            KEY_TOKEN: self.session.token,
            KEY_USER_ID: self.session.user_id,
            KEY_AUTO_SYNC: 'true' if self.auto_sync else 'false',
            KEY_LIBRARY_DIR: str(self.library_dir),
        })

    @property
    def is_logged_in(self) -> bool:
        return self.session.is_active

    def set_session(self, session: Session):
        self.session = session

    def clear_session(self):
        # username is kept so the login form can be prefilled
        self.session = Session(username=self.session.username)

    def ensure_library_dir(self):
        self.library_dir.mkdir(parents=True, exist_ok=True)

import logging
import threading
import traceback
from contextlib import contextmanager
from typing import Optional

from cloudreader_sync.api.cloudreader_client import normalize_server_url
from cloudreader_sync.errors import AuthError, ConfigError, SyncBusyError, SyncError
from cloudreader_sync.sync_clients.progress_sync_client import derive_book_id
from cloudreader_sync.sync_clients.sync_client_interface import (
    BundleSyncResult, DocumentInfo, HostHooks, LibrarySyncResult, ProgressDecision, ProgressRecord,
)
from cloudreader_sync.utils.config_loader import get_int
from cloudreader_sync.utils.logging_utils import sanitize_log_data

logger = logging.getLogger(__name__)

OFFLINE_MESSAGE = "No network connection"
FULL_SYNC_AFTER_LOGIN_SECS = 1


class SyncManager:
    """
    Engine context: owns every component and serializes sync cycles.

    Cycles (manual or scheduled) take `_sync_lock` without blocking. A manual
    request that finds it held raises SyncBusyError; a scheduled firing just
    skips and waits for the next period.
    """

    def __init__(self,
                 settings_store=None,
                 api_client=None,
                 book_index=None,
                 placeholder_service=None,
                 library_sync_client=None,
                 bundle_sync_client=None,
                 progress_sync_client=None,
                 connectivity=None,
                 scheduler=None,
                 hooks: HostHooks = None):

        logger.info("=== Sync Manager Starting ===")
        self.settings = settings_store
        self.api = api_client
        self.index = book_index
        self.placeholders = placeholder_service
        self.library_sync = library_sync_client
        self.bundle_sync = bundle_sync_client
        self.progress_sync = progress_sync_client
        self.connectivity = connectivity
        self.scheduler = scheduler
        self.hooks = hooks or HostHooks()

        self._sync_lock = threading.Lock()
        self.last_library_result: Optional[LibrarySyncResult] = None
        self.last_bundle_result: Optional[BundleSyncResult] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, background: bool = True):
        self.index.load()
        try:
            self.settings.ensure_library_dir()
        except OSError as e:
            logger.warning(f"Cannot create library dir {self.settings.library_dir}: {e}")

        self.scheduler.start(background=background)
        self._refresh_schedule()
        if self._auto_sync_active():
            delay = get_int("AUTO_SYNC_STARTUP_DELAY_SECS")
            self.scheduler.run_once_in(delay, self.run_auto_cycle)
            logger.info(f"First auto-sync in {delay}s")

    def shutdown(self):
        logger.info("Sync manager shutting down")
        self.scheduler.stop()
        if self.index.dirty:
            self.index.save()

    def _auto_sync_active(self) -> bool:
        return self.settings.is_logged_in and self.settings.auto_sync

    def _refresh_schedule(self):
        if self._auto_sync_active():
            self.scheduler.enable(self.run_auto_cycle)
        else:
            self.scheduler.disable()

    def _notify(self, message):
        logger.info(message)
        if self.hooks.notify:
            try:
                self.hooks.notify(message)
            except Exception as e:
                logger.warning(f"Host notify hook failed: {e}")

    @contextmanager
    def _cycle(self):
        if not self._sync_lock.acquire(blocking=False):
            raise SyncBusyError("Sync already in progress")
        try:
            yield
        finally:
            self._sync_lock.release()

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def set_server_url(self, url):
        self.settings.server_url = normalize_server_url(url)
        self.settings.save()
        logger.info(f"Server URL set to {self.settings.server_url or '(none)'}")
        return self.settings.server_url

    def login(self, username, password, server_url=None):
        return self._authenticate("login", username, password, server_url)

    def register(self, username, password, server_url=None):
        return self._authenticate("register", username, password, server_url)

    def _authenticate(self, action, username, password, server_url):
        if not username or not password:
            raise AuthError("Please fill all fields.")
        if server_url is not None:
            self.set_server_url(server_url)
        if not self.api.is_configured():
            raise ConfigError("Server URL not configured")

        try:
            session = getattr(self.api, action)(username, password)
        except AuthError:
            self.settings.clear_session()
            self.settings.save()
            self._refresh_schedule()
            raise

        self.settings.set_session(session)
        self.settings.save()
        self._notify(f"Logged in as {session.username}")

        self._refresh_schedule()
        self.scheduler.run_once_in(FULL_SYNC_AFTER_LOGIN_SECS, self._full_sync_after_login)
        return session

    def _full_sync_after_login(self):
        try:
            self.sync_library()
        except SyncBusyError:
            logger.info("Skipping post-login sync, another cycle is running")
        except SyncError as e:
            logger.warning(f"Post-login sync failed: {e}")

    def logout(self):
        self.settings.clear_session()
        self.settings.save()
        self.scheduler.disable()
        self.scheduler.cancel_one_shots()
        self._notify("Logged out.")

    def set_auto_sync(self, enabled: bool):
        self.settings.auto_sync = bool(enabled)
        self.settings.save()
        self._refresh_schedule()
        logger.info(f"Auto-sync {'ON' if self.settings.auto_sync else 'OFF'}")
        return self.settings.auto_sync

    # ------------------------------------------------------------------
    # Sync cycles
    # ------------------------------------------------------------------

    def _require_online(self):
        self.api.get_base_url()
        return self.connectivity.is_online()

    def sync_library(self) -> LibrarySyncResult:
        """Manual full library sync. Raises ConfigError or SyncBusyError."""
        if not self._require_online():
            return LibrarySyncResult(aborted=True, message=OFFLINE_MESSAGE)
        with self._cycle():
            result = self.library_sync.sync_library()
        self.last_library_result = result
        if result.aborted:
            self._notify(f"Sync failed: {result.message}")
        else:
            self._notify(
                f"Library synced! Total: {result.total} New: {result.created} "
                f"Existing: {result.skipped} Errors: {result.errors}"
            )
        return result

    def sync_bundles(self) -> BundleSyncResult:
        """Manual bundle reconciliation. Raises ConfigError or SyncBusyError."""
        if not self._require_online():
            return BundleSyncResult(aborted=True, message=OFFLINE_MESSAGE)
        with self._cycle():
            result = self.bundle_sync.sync_all_bundles()
        self.last_bundle_result = result
        return result

    def run_auto_cycle(self) -> dict:
        """One scheduler firing: library auto path, then bundles. Never raises."""
        if not self._auto_sync_active():
            logger.debug("Auto-sync inactive, skipping cycle")
            return {"skipped": "inactive"}
        if not self.api.is_configured() or not self.connectivity.is_online():
            logger.info("📴 Auto-sync skipped: no network")
            return {"skipped": "offline"}

        try:
            with self._cycle():
                library = self.library_sync.auto_sync()
                self.last_library_result = library
                if library.aborted:
                    logger.info(f"Auto-sync aborted: {library.message}")
                    return {"library": library.as_dict()}

                if library.created:
                    self._notify(f"Auto-sync done! New: {library.created}")

                bundles = self.bundle_sync.sync_all_bundles()
                self.last_bundle_result = bundles
                return {"library": library.as_dict(), "bundles": bundles.as_dict()}
        except SyncBusyError:
            logger.info("Auto-sync skipped: another cycle is running")
            return {"skipped": "busy"}
        except Exception as e:
            logger.error(f"Auto-sync cycle internal error: {e}")
            logger.error(traceback.format_exc())
            return {"error": str(e)}

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    def on_before_open(self, file_path) -> bool:
        """
        Called by the host before it opens a file. A recognized placeholder is
        replaced by the real book first. Returns True when the host may open it.
        """
        is_placeholder, book_id = self.placeholders.is_placeholder(file_path)
        if not is_placeholder:
            return True

        logger.info(f"Intercepted placeholder: {sanitize_log_data(str(file_path))} book_id: {book_id}")
        try:
            online = self._require_online()
        except ConfigError as e:
            self._notify(str(e))
            return False
        if not online:
            self._notify(OFFLINE_MESSAGE)
            return False

        if not self.placeholders.materialize(file_path, book_id):
            self._notify("Download failed")
            return False
        return True

    def check_progress(self, book_id, local: ProgressRecord) -> ProgressDecision:
        remote = self.progress_sync.pull(book_id)
        return self.progress_sync.reconcile(local, remote)

    def on_document_opened(self, document: DocumentInfo) -> Optional[ProgressDecision]:
        if not self._auto_sync_active():
            return None
        if not self.connectivity.is_online():
            logger.debug("Progress pull skipped: offline")
            return None

        book_id = derive_book_id(document.file_path, document.partial_md5)
        decision = self.check_progress(book_id, document.progress())
        if decision.prompt:
            self._offer_jump(decision)
        return decision

    def _offer_jump(self, decision: ProgressDecision):
        confirm = self.hooks.confirm_progress_jump
        if confirm is None:
            logger.info(
                f"Server at {decision.remote.percentage:.0f}%, local at {decision.local.percentage:.0f}% "
                f"(no host prompt registered)"
            )
            return
        if confirm(decision.local, decision.remote) and decision.remote.current_page and self.hooks.goto_page:
            self.hooks.goto_page(decision.remote.current_page)

    def on_document_closed(self, document: DocumentInfo) -> bool:
        if not self._auto_sync_active():
            return False
        book_id = derive_book_id(document.file_path, document.partial_md5)
        return self.progress_sync.push(book_id, document.progress())

    def push_progress(self, book_id, record: ProgressRecord) -> bool:
        """Manual "sync current book" action."""
        if not self.settings.is_logged_in:
            raise AuthError("Not logged in")
        ok = self.progress_sync.push(book_id, record)
        if ok:
            self._notify(f"Synced: {int(record.percentage)}%")
        else:
            self._notify("Sync failed")
        return ok

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict:
        return {
            "server_url": self.settings.server_url,
            "username": self.settings.session.username,
            "logged_in": self.settings.is_logged_in,
            "auto_sync": self.settings.auto_sync,
            "library_dir": str(self.settings.library_dir),
            "books": len(self.index),
            "scheduled": self.scheduler.is_enabled,
            "syncing": self._sync_lock.locked(),
            "online": self.connectivity.last_state,
            "last_library_sync": self.last_library_result.as_dict() if self.last_library_result else None,
            "last_bundle_sync": self.last_bundle_result.as_dict() if self.last_bundle_result else None,
        }

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests

from cloudreader_sync.errors import AuthError, ConfigError, DecodeError, HTTPError, NetworkError
from cloudreader_sync.sync_clients.sync_client_interface import (
    Book, ProgressRecord, ServerBundleRecord, Session,
)
from cloudreader_sync.utils.logging_utils import sanitize_log_data
from cloudreader_sync.version import APP_VERSION

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
# Error bodies are only read far enough to find an "error" field
ERROR_BODY_LIMIT = 64 * 1024


@dataclass(frozen=True)
class TimeoutProfile:
    """(block, total): per-read stall timeout and wall-clock budget, in seconds."""
    block: float
    total: float


def _env_float(key, default):
    try:
        return float(os.environ.get(key, default))
    except (TypeError, ValueError):
        logger.warning(f"Invalid {key} value, defaulting to {default}")
        return float(default)


def metadata_timeout() -> TimeoutProfile:
    return TimeoutProfile(_env_float("TIMEOUT_BLOCK", 5), _env_float("TIMEOUT_TOTAL", 15))


def transfer_timeout() -> TimeoutProfile:
    return TimeoutProfile(_env_float("TIMEOUT_DOWNLOAD_BLOCK", 15), _env_float("TIMEOUT_DOWNLOAD_TOTAL", 300))


def normalize_server_url(url: Optional[str]) -> str:
    url = (url or "").strip().rstrip('/')
    if not url:
        return ""
    if not url.lower().startswith(('http://', 'https://')):
        url = f"http://{url}"
    return url


class CloudReaderClient:
    """
    HTTP transport for the CloudReader server.

    Server URL and session are read from the settings store on every call, so a
    login or logout takes effect for the next request without rebuilding the client.
    """

    AUTH_PREFIX = "/api/auth/"

    def __init__(self, settings_store):
        self.settings = settings_store
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": f"cloudreader-sync/{APP_VERSION}"})
        # One request at a time across the web, scheduler and host threads
        self._request_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def get_base_url(self) -> str:
        base_url = normalize_server_url(self.settings.server_url)
        if not base_url:
            raise ConfigError("Server URL not configured")
        return base_url

    def is_configured(self) -> bool:
        return bool(normalize_server_url(self.settings.server_url))

    def call(self, method, path, headers=None, body=None, json_body=None, params=None,
             timeout: TimeoutProfile = None, sink=None):
        """
        Perform one request and return (status_code, payload).

        payload is the decoded JSON body ({} when empty or undecodable), or None
        when the body was streamed into `sink`. Raises NetworkError when no
        response arrives within the timeout profile and HTTPError on non-2xx.
        """
        timeout = timeout or metadata_timeout()
        url = f"{self.get_base_url()}{path}"

        request_headers = {"Accept": "application/json"}
        if json_body is not None:
            body = json.dumps(json_body)
            request_headers["Content-Type"] = "application/json"
        request_headers.update(headers or {})

        token = self.settings.session.token
        if token and not path.startswith(self.AUTH_PREFIX):
            request_headers["Authorization"] = f"Bearer {token}"

        with self._request_lock:
            return self._send(method, url, request_headers, body, params, timeout, sink)

    def _send(self, method, url, request_headers, body, params, timeout: TimeoutProfile, sink):
        logger.debug(f"CloudReader call: {method} {url}")
        deadline = time.monotonic() + timeout.total

        try:
            response = self.session.request(
                method, url,
                headers=request_headers,
                data=body,
                params=params,
                timeout=(timeout.block, timeout.block),
                stream=True,
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Timed out contacting {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Network error contacting {url}: {e}") from e

        try:
            status = response.status_code
            if not 200 <= status < 300:
                content = self._read_body(response, deadline, limit=ERROR_BODY_LIMIT)
                raise HTTPError(status, self._error_message(status, content))

            if sink is not None:
                self._read_body(response, deadline, sink=sink)
                return status, None

            content = self._read_body(response, deadline)
            return status, self._decode(content)
        finally:
            response.close()

    def _read_body(self, response, deadline, sink=None, limit=None):
        """Stream the body, enforcing the wall-clock deadline between chunks."""
        chunks = []
        size = 0
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if time.monotonic() > deadline:
                    raise NetworkError("Transfer exceeded total timeout")
                if not chunk:
                    continue
                if sink is not None:
                    sink.write(chunk)
                    continue
                chunks.append(chunk)
                size += len(chunk)
                if limit is not None and size >= limit:
                    break
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Connection lost while reading response: {e}") from e
        return b"".join(chunks)

    @staticmethod
    def _decode(content: bytes):
        if not content:
            return {}
        try:
            result = json.loads(content)
        except (ValueError, UnicodeDecodeError):
            logger.debug(f"Ignoring undecodable success body: {sanitize_log_data(content)}")
            return {}
        # JSON null means "nothing here"; keep it distinguishable from an empty object
        return result

    @staticmethod
    def _error_message(status, content: bytes) -> str:
        if content:
            try:
                data = json.loads(content)
                if isinstance(data, dict) and data.get('error'):
                    return str(data['error'])
            except (ValueError, UnicodeDecodeError):
                pass
        return f"HTTP {status}"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def login(self, username, password) -> Session:
        return self._authenticate("login", username, password)

    def register(self, username, password) -> Session:
        return self._authenticate("register", username, password)

    def _authenticate(self, action, username, password) -> Session:
        try:
            _, result = self.call("POST", f"{self.AUTH_PREFIX}{action}",
                                  json_body={"username": username, "password": password})
        except HTTPError as e:
            raise AuthError(e.message) from e

        if not isinstance(result, dict) or not result.get('token'):
            raise DecodeError(f"{action} response did not contain a token")
        return Session(
            token=str(result['token']),
            user_id=str(result.get('user_id') or ''),
            username=str(result.get('username') or username),
        )

    def ping(self, timeout: float = 3) -> bool:
        """True when the server answers at all (any status)."""
        try:
            base_url = self.get_base_url()
            with self._request_lock:
                self.session.head(base_url, timeout=(timeout, timeout), allow_redirects=False)
            return True
        except ConfigError:
            return False
        except requests.exceptions.RequestException as e:
            logger.debug(f"Connectivity probe failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Library
    # ------------------------------------------------------------------

    def get_library(self) -> Optional[list]:
        """
        Fetch the manifest. Returns None when the response carries no `books`
        key at all, and the (possibly empty) list of valid entries otherwise.
        """
        _, result = self.call("GET", "/api/library")
        if not isinstance(result, dict) or not isinstance(result.get('books'), list):
            return None
        books = []
        for entry in result['books']:
            book = Book.from_payload(entry)
            if book is None:
                logger.warning(f"Skipping malformed manifest entry: {sanitize_log_data(entry)}")
                continue
            books.append(book)
        return books

    def download_placeholder(self, book_id, sink, width=None, quality=None):
        params = {}
        if width:
            params["width"] = width
        if quality:
            params["quality"] = quality
        self.call("GET", f"/books/{book_id}/placeholder", params=params or None, sink=sink)

    def download_book(self, book_id, sink):
        self.call("GET", f"/books/{book_id}/download", timeout=transfer_timeout(), sink=sink)

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------

    def get_bundle_records(self) -> dict:
        """Server bundle records keyed by book id. Lenient: bad entries are dropped."""
        _, result = self.call("GET", "/api/sync/sdr")
        records = {}
        if not isinstance(result, dict):
            return records
        for entry in result.get('sdrs') or []:
            record = ServerBundleRecord.from_payload(entry)
            if record is None:
                logger.debug(f"Ignoring malformed bundle record: {sanitize_log_data(entry)}")
                continue
            records[record.book_id] = record
        return records

    def get_bundle_record(self, book_id) -> Optional[ServerBundleRecord]:
        _, result = self.call("GET", f"/api/sync/sdr/{book_id}/info")
        if result is None:
            return None
        record = ServerBundleRecord.from_payload(result)
        if record is None:
            raise DecodeError(f"Malformed bundle record for {book_id}")
        return record

    def download_bundle(self, book_id, sink):
        self.call("GET", f"/api/sync/sdr/{book_id}", timeout=transfer_timeout(), sink=sink)

    def upload_bundle(self, book_id, data: bytes):
        self.call("PUT", f"/api/sync/sdr/{book_id}", body=data,
                  headers={"Content-Type": "application/gzip"},
                  timeout=transfer_timeout())

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def get_progress(self, book_id) -> Optional[ProgressRecord]:
        _, result = self.call("GET", f"/api/sync/progress/{book_id}")
        if result is None:
            return None
        if not isinstance(result, dict):
            raise DecodeError(f"Malformed progress record for {book_id}")
        if result.get('percentage') is None:
            return None
        record = ProgressRecord.from_payload(result)
        if record is None:
            raise DecodeError(f"Malformed progress record for {book_id}")
        return record

    def put_progress(self, book_id, record: ProgressRecord):
        self.call("PUT", f"/api/sync/progress/{book_id}", json_body=record.to_payload())

import logging
import os
import signal
import sys
from datetime import datetime
from typing import Optional

from dependency_injector import providers
from flask import Blueprint, Flask, jsonify, request

from cloudreader_sync.db.database_service import DatabaseService
from cloudreader_sync.db.migration_utils import initialize_database
from cloudreader_sync.errors import (
    AuthError, ConfigError, HTTPError, NetworkError, SyncBusyError, SyncError,
)
from cloudreader_sync.sync_clients.sync_client_interface import DocumentInfo, ProgressRecord
from cloudreader_sync.sync_manager import SyncManager
from cloudreader_sync.utils.config_loader import ConfigLoader, get_data_dir, get_int
from cloudreader_sync.utils.di_container import Container, create_container
from cloudreader_sync.utils.logging_utils import configure_logging
from cloudreader_sync.version import APP_VERSION

logger = logging.getLogger(__name__)

# Global variables - initialized via setup_dependencies()
container: Optional[Container] = None
manager: Optional[SyncManager] = None
database_service: Optional[DatabaseService] = None
memory_log_handler = None

api = Blueprint('api', __name__, url_prefix='/api')

LOG_LEVELS = {'DEBUG': 10, 'INFO': 20, 'WARNING': 30, 'ERROR': 40, 'CRITICAL': 50}


def setup_dependencies(test_container=None):
    """
    Initialize dependencies for the web server.

    Args:
        test_container: Optional container for tests. If None, the production
                        container is created after settings are loaded.
    """
    global container, manager, database_service

    if test_container is not None:
        container = test_container
        database_service = container.database_service()
    else:
        # 1. Database first: it holds the tunables
        data_dir = get_data_dir()
        data_dir.mkdir(parents=True, exist_ok=True)
        database_service = initialize_database(data_dir)

        # 2. Settings from DB override the environment
        ConfigLoader.bootstrap_config(database_service)
        ConfigLoader.load_settings(database_service)

        # 3. Container reads the updated os.environ
        container = create_container(data_dir)
        container.database_service.override(providers.Object(database_service))

    manager = container.sync_manager()
    logger.info(f"Web server dependencies initialized (DATA_DIR={container.data_dir()})")


def create_app(test_container=None):
    """App factory. Returns (app, container)."""
    global memory_log_handler

    setup_dependencies(test_container)
    _, memory_log_handler = configure_logging(container.data_dir())

    app = Flask(__name__)
    app.register_blueprint(api)
    return app, container


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _document_from_body(data: dict, file_path: str = "") -> DocumentInfo:
    percent = data.get('percent_finished')
    return DocumentInfo(
        file_path=str(data.get('file_path') or file_path),
        current_page=int(data.get('current_page') or 0),
        total_pages=int(data.get('total_pages') or 0),
        percent_finished=float(percent) if percent is not None else None,
        partial_md5=data.get('partial_md5') or None,
    )


def _decision_payload(decision):
    if decision is None:
        return {'checked': False}
    return {
        'checked': True,
        'local': decision.local.to_payload(),
        'remote': decision.remote.to_payload() if decision.remote else None,
        'delta': decision.delta,
        'prompt': decision.prompt,
    }


@api.errorhandler(SyncError)
def handle_sync_error(e):
    if isinstance(e, SyncBusyError):
        status = 409
    elif isinstance(e, ConfigError):
        status = 400
    elif isinstance(e, AuthError):
        status = 401
    elif isinstance(e, NetworkError):
        status = 503
    elif isinstance(e, HTTPError):
        status = 502
    else:
        status = 500
    logger.warning(f"Request failed ({status}): {e}")
    return jsonify({'error': str(e)}), status


@api.errorhandler(ValueError)
def handle_bad_request(e):
    return jsonify({'error': f"Invalid request: {e}"}), 400


# ---------------- ACCOUNT ----------------

@api.route('/status')
def api_status():
    status = manager.status()
    status['version'] = APP_VERSION
    return jsonify(status)


@api.route('/server', methods=['POST'])
def api_set_server():
    url = manager.set_server_url(_json_body().get('server_url'))
    return jsonify({'server_url': url})


def _auth(action):
    data = _json_body()
    session = getattr(manager, action)(
        data.get('username') or '',
        data.get('password') or '',
        server_url=data.get('server_url'),
    )
    return jsonify({'username': session.username, 'user_id': session.user_id, 'logged_in': True})


@api.route('/login', methods=['POST'])
def api_login():
    return _auth('login')


@api.route('/register', methods=['POST'])
def api_register():
    return _auth('register')


@api.route('/logout', methods=['POST'])
def api_logout():
    manager.logout()
    return jsonify({'logged_in': False})


@api.route('/auto-sync', methods=['POST'])
def api_auto_sync():
    data = _json_body()
    enabled = data['enabled'] if 'enabled' in data else not manager.settings.auto_sync
    return jsonify({'auto_sync': manager.set_auto_sync(bool(enabled))})


# ---------------- SYNC ----------------

@api.route('/sync', methods=['POST'])
def api_sync_library():
    result = manager.sync_library()
    return jsonify(result.as_dict()), (503 if result.aborted else 200)


@api.route('/sync/bundles', methods=['POST'])
def api_sync_bundles():
    result = manager.sync_bundles()
    return jsonify(result.as_dict()), (503 if result.aborted else 200)


@api.route('/open', methods=['POST'])
def api_open():
    path = _json_body().get('path')
    if not path:
        return jsonify({'error': 'path is required'}), 400
    return jsonify({'path': path, 'ready': manager.on_before_open(path)})


# ---------------- PROGRESS ----------------

@api.route('/progress/<book_id>', methods=['POST'])
def api_push_progress(book_id):
    record = _document_from_body(_json_body()).progress()
    ok = manager.push_progress(book_id, record)
    return jsonify({'ok': ok, 'progress': record.to_payload()}), (200 if ok else 502)


@api.route('/progress/<book_id>/reconcile', methods=['POST'])
def api_reconcile_progress(book_id):
    record = _document_from_body(_json_body()).progress()
    return jsonify(_decision_payload(manager.check_progress(book_id, record)))


@api.route('/document/opened', methods=['POST'])
def api_document_opened():
    document = _document_from_body(_json_body())
    if not document.file_path:
        return jsonify({'error': 'file_path is required'}), 400
    return jsonify(_decision_payload(manager.on_document_opened(document)))


@api.route('/document/closed', methods=['POST'])
def api_document_closed():
    document = _document_from_body(_json_body())
    if not document.file_path:
        return jsonify({'error': 'file_path is required'}), 400
    return jsonify({'pushed': manager.on_document_closed(document)})


# ---------------- LOGS ----------------

@api.route('/logs')
def api_logs():
    """Recent log lines from memory, filtered by minimum level and search term."""
    count = min(request.args.get('count', 50, type=int), 500)
    min_level = LOG_LEVELS.get(request.args.get('level', 'DEBUG').upper(), 10)
    search_term = request.args.get('search', '').lower()

    recent = memory_log_handler.get_recent_logs(count * 2) if memory_log_handler else []
    filtered = [
        entry for entry in recent
        if LOG_LEVELS.get(entry['level'], 20) >= min_level
        and (not search_term or search_term in entry['message'].lower())
    ]
    return jsonify({'logs': filtered[-count:], 'timestamp': datetime.now().isoformat()})


def main():
    app, _ = create_app()

    def handle_exit_signal(signum, frame):
        logger.warning(f"⚠️ Received signal {signum} - Shutting down...")
        manager.shutdown()
        for handler in logging.getLogger().handlers:
            handler.flush()
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_exit_signal)
    signal.signal(signal.SIGINT, handle_exit_signal)

    logger.info(f"=== CloudReader Sync {APP_VERSION} started ===")
    manager.start()

    host = os.environ.get('WEB_HOST', '127.0.0.1')
    port = get_int('WEB_PORT')
    logger.info(f"🌐 Control API starting on {host}:{port}")
    app.run(host=host, port=port, debug=False, use_reloader=False)


if __name__ == '__main__':
    main()

import logging
import os
from collections import deque
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

logger = logging.getLogger(__name__)

NOISY_LOGGERS = ('urllib3', 'requests', 'schedule', 'werkzeug', 'alembic')


class MemoryLogHandler(logging.Handler):
    """Log handler that keeps logs in memory for the status endpoint."""

    def __init__(self, maxlen=1000):
        super().__init__()
        self.logs = deque(maxlen=maxlen)

    def emit(self, record):
        try:
            self.logs.append({
                'timestamp': datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S'),
                'level': record.levelname,
                'message': record.getMessage(),
                'module': record.name
            })
        except Exception:
            self.handleError(record)

    def get_recent_logs(self, count=100):
        """Get the most recent logs up to specified count."""
        logs = list(self.logs)
        return logs[-count:] if count else logs


def _log_level():
    return getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO)


def setup_file_logging(data_dir=None):
    """Setup rotating file logging under <DATA_DIR>/logs."""
    data_dir = Path(data_dir or os.environ.get("DATA_DIR", ""))
    if not str(data_dir) or not data_dir.exists():
        logger.warning("Not setting up file logging because missing data dir")
        return ""

    log_dir = data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "cloudreader_sync.log"

    file_handler = RotatingFileHandler(str(log_path), maxBytes=10*1024*1024, backupCount=5, encoding='utf-8')
    file_handler.setLevel(_log_level())
    file_handler.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s - %(name)s: %(message)s'))

    # Attach to the root logger so all module loggers go to the same file
    logging.getLogger().addHandler(file_handler)
    return log_path


def setup_console_logging():
    """Setup console logging handler."""
    console_handler = logging.StreamHandler()
    console_handler.setLevel(_log_level())
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))

    root_logger = logging.getLogger()
    root_logger.addHandler(console_handler)
    # Root passes everything, handlers filter individually
    root_logger.setLevel(logging.DEBUG)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)


def setup_memory_logging():
    """Setup memory log handler to capture logs from all modules."""
    memory_handler = MemoryLogHandler()
    memory_handler.setLevel(logging.DEBUG)
    logging.getLogger().addHandler(memory_handler)
    return memory_handler


def configure_logging(data_dir=None):
    """Install console, file and memory handlers once. Returns (log_path, memory_handler)."""
    root_logger = logging.getLogger()
    if getattr(root_logger, '_cloudreader_configured', False):
        return root_logger._cloudreader_log_path, root_logger._cloudreader_memory_handler

    setup_console_logging()
    log_path = setup_file_logging(data_dir)
    memory_handler = setup_memory_logging()

    root_logger._cloudreader_configured = True
    root_logger._cloudreader_log_path = log_path
    root_logger._cloudreader_memory_handler = memory_handler
    return log_path, memory_handler


def sanitize_log_data(data):
    """Truncate long strings to "First 50... [truncated] ...Last 50"."""
    if data is None:
        return ""
    try:
        s = str(data)
    except Exception:
        return "[unrepresentable]"
    if len(s) <= 100:
        return s
    return f"{s[:50]}... [truncated] ...{s[-50:]}"

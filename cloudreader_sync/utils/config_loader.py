import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

# Tunables managed through the settings table (upper-case keys).
# Engine state such as server_url/token uses lower-case keys owned by SettingsStore.
ALL_SETTINGS = [
    # System
    'DATA_DIR', 'LIBRARY_DIR', 'LOG_LEVEL', 'WEB_HOST', 'WEB_PORT',

    # Sync Behavior
    'SYNC_PERIOD_MINS', 'AUTO_SYNC_STARTUP_DELAY_SECS', 'PROGRESS_PROMPT_THRESHOLD',

    # Network
    'TIMEOUT_BLOCK', 'TIMEOUT_TOTAL', 'TIMEOUT_DOWNLOAD_BLOCK', 'TIMEOUT_DOWNLOAD_TOTAL',

    # Placeholders
    'PLACEHOLDER_MAX_SIZE', 'PLACEHOLDER_WIDTH', 'PLACEHOLDER_QUALITY',
]


def default_data_dir() -> Path:
    return Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share")) / "cloudreader"


# Default values
DEFAULT_CONFIG = {
    'LOG_LEVEL': 'INFO',
    'WEB_HOST': '127.0.0.1',
    'WEB_PORT': '8089',
    'SYNC_PERIOD_MINS': '30',
    'AUTO_SYNC_STARTUP_DELAY_SECS': '5',
    'PROGRESS_PROMPT_THRESHOLD': '2',
    'TIMEOUT_BLOCK': '5',
    'TIMEOUT_TOTAL': '15',
    'TIMEOUT_DOWNLOAD_BLOCK': '15',
    'TIMEOUT_DOWNLOAD_TOTAL': '300',
    'PLACEHOLDER_MAX_SIZE': str(500 * 1024),
    'PLACEHOLDER_WIDTH': '600',
    'PLACEHOLDER_QUALITY': '90',
}


def get_int(key: str, default: int = None) -> int:
    """Read an integer tunable from the environment, falling back to DEFAULT_CONFIG."""
    fallback = default if default is not None else int(DEFAULT_CONFIG.get(key, 0))
    try:
        return int(float(os.environ.get(key, fallback)))
    except (TypeError, ValueError):
        logger.warning(f"Invalid {key} value, defaulting to {fallback}")
        return fallback


def get_float(key: str, default: float = None) -> float:
    fallback = default if default is not None else float(DEFAULT_CONFIG.get(key, 0))
    try:
        return float(os.environ.get(key, fallback))
    except (TypeError, ValueError):
        logger.warning(f"Invalid {key} value, defaulting to {fallback}")
        return fallback


def get_data_dir() -> Path:
    return Path(os.environ.get("DATA_DIR") or default_data_dir())


class ConfigLoader:
    """
    Loads tunables from the database and updates environment variables.
    Settings in the database take precedence over environment variables,
    except DATA_DIR, which locates the database itself.
    """

    @staticmethod
    def bootstrap_config(db_service):
        """
        If no tunable is stored yet, populate them from os.environ or defaults.
        """
        try:
            existing_settings = db_service.get_all_settings()
            if any(key in existing_settings for key in ALL_SETTINGS):
                return

            logger.info("🚀 Bootstrapping configuration from environment variables...")
            values = {}
            for key in ALL_SETTINGS:
                # Priority: 1. Env Var, 2. Default, 3. Empty string
                val = os.environ.get(key, DEFAULT_CONFIG.get(key, ""))
                values[key] = "" if val is None else str(val)

            db_service.set_settings(values)
            logger.info(f"✅ Bootstrapped {len(values)} settings to database")

        except Exception as e:
            logger.error(f"⚠️  Error bootstrapping config: {e}")

    @staticmethod
    def load_settings(db_service):
        """
        Load stored tunables from the database into os.environ.
        """
        try:
            settings = db_service.get_all_settings()
            count = 0
            for key in ALL_SETTINGS:
                if key == 'DATA_DIR' or key not in settings:
                    continue
                value = settings[key]
                # Empty values keep whatever the environment/defaults provide
                if value is None or value == "":
                    continue
                os.environ[key] = str(value)
                count += 1

            logger.info(f"⚙️  Loaded {count} settings from database")

        except Exception as e:
            logger.error(f"⚠️  Error loading settings from database: {e}")

import os

APP_VERSION = os.environ.get("APP_VERSION", "0.1.0")

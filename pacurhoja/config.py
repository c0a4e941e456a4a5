import os
import sys
from dotenv import load_dotenv


def get_app_data_dir() -> str:
    """Return a user-writable data directory for PacurHoja (created if absent)."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or os.path.expanduser("~")
    elif sys.platform == "darwin":
        base = os.path.expanduser("~/Library/Application Support")
    else:
        base = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    app_dir = os.path.join(base, "PacurHoja")
    os.makedirs(app_dir, exist_ok=True)
    return app_dir

# Load .env from app-data dir first, then fall back to CWD (dev)
load_dotenv(os.path.join(get_app_data_dir(), ".env"))
load_dotenv()

# Grid bounds: 50 rows x 15 columns (A..O) unless overridden.
MAX_ROWS = int(os.getenv("PACUR_MAX_ROWS", "50"))
MAX_COLS = int(os.getenv("PACUR_MAX_COLS", "15"))

HOST = os.getenv("PACUR_HOST", "127.0.0.1")
PORT = int(os.getenv("PACUR_PORT", "8000"))


def get_db_path() -> str:
    return os.getenv("PACUR_DB_PATH") or os.path.join(get_app_data_dir(), "pacurhoja.db")

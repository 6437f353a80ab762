"""File path resolution using platformdirs.

Persistent state and logs live in platform-appropriate directories:
  macOS: ~/Library/Application Support/com.stockbridge.app/
  Linux: ~/.local/share/com.stockbridge.app/
  Windows: %LOCALAPPDATA%/com.stockbridge.app/

STOCKBRIDGE_DATA_DIR overrides the data directory (useful for tests and
for running several isolated instances side by side).
"""

import os
from pathlib import Path

import platformdirs

_BUNDLE_ID = "com.stockbridge.app"


def get_data_dir() -> Path:
    """Return the directory for persistent data (state DB, exports)."""
    override = os.environ.get("STOCKBRIDGE_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(_BUNDLE_ID, appauthor=False))


def get_log_dir() -> Path:
    """Return the directory for application logs."""
    override = os.environ.get("STOCKBRIDGE_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser() / "logs"
    return Path(platformdirs.user_log_dir(_BUNDLE_ID, appauthor=False))


def get_exports_dir() -> Path:
    """Return the directory for ledger CSV exports."""
    return get_data_dir() / "exports"


def get_default_db_path() -> Path:
    """Return the default SQLite state database file path."""
    return get_data_dir() / "stockbridge.db"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    for d in [get_data_dir(), get_log_dir(), get_exports_dir()]:
        d.mkdir(parents=True, exist_ok=True)

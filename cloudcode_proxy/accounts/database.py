"""Token extraction for accounts whose credentials live in the IDE state database."""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from ..core.exceptions import AuthError

logger = logging.getLogger("cloudcode-proxy")

AUTH_STATUS_KEY = "antigravityAuthStatus"


def default_state_db_path() -> Path:
    """Location of the IDE's global state database on this platform."""
    home = Path.home()
    if sys.platform == "darwin":
        base = home / "Library" / "Application Support"
    elif sys.platform == "win32":
        base = home / "AppData" / "Roaming"
    else:
        base = home / ".config"
    return base / "Antigravity" / "User" / "globalStorage" / "state.vscdb"


def read_auth_status(db_path: Optional[str] = None) -> dict[str, Any]:
    """Read the stored auth status record.

    Args:
        db_path: Path to the SQLite state database (platform default if None).

    Returns:
        The decoded auth status object.

    Raises:
        AuthError: If the database, the record or its token is missing.
    """
    path = Path(db_path) if db_path else default_state_db_path()
    if not path.exists():
        raise AuthError(f"State database not found: {path}")

    # No pooled connection outlives a read
    engine = create_engine(f"sqlite:///{path}", poolclass=NullPool)
    try:
        with engine.connect() as conn:
            row = conn.execute(
                text("SELECT value FROM ItemTable WHERE key = :key"),
                {"key": AUTH_STATUS_KEY},
            ).first()
    except SQLAlchemyError as exc:
        raise AuthError(f"Failed to read state database {path}: {exc}") from exc
    finally:
        engine.dispose()

    if row is None:
        raise AuthError(f"No auth status stored in {path}; sign in to the IDE first")
    try:
        status = json.loads(row[0])
    except (TypeError, json.JSONDecodeError) as exc:
        raise AuthError(f"Unreadable auth status in {path}") from exc
    if not isinstance(status, dict) or not status.get("apiKey"):
        raise AuthError(f"Auth status in {path} has no token")

    logger.debug(f"Read auth status from {path}")
    return status


def read_database_token(db_path: Optional[str] = None) -> str:
    return read_auth_status(db_path)["apiKey"]

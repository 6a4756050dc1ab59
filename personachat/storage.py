"""
PersonaChat Storage Module
SQLite persistence for characters, chat sessions and settings.

Records are stored as JSON blobs and validated into the pydantic models on
read, so rows written before a field existed still load with its default.
"""

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import List, Optional

from personachat.config_loader import CONFIG
from personachat.models import AppSettings, Character, ChatSession, now_ms

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_PATH = os.path.join(BASE_DIR, "data", "personachat.db")

SETTINGS_KEY = "app_settings"

# Thread-local storage for connections
_thread_local = threading.local()


def get_db_path() -> str:
    return CONFIG["server"].get("db_path") or DEFAULT_DB_PATH


@contextmanager
def get_connection():
    """Get a thread-local database connection with context manager."""
    db_path = get_db_path()
    conn = getattr(_thread_local, 'connection', None)
    if conn is not None and getattr(_thread_local, 'path', None) != db_path:
        conn.close()
        conn = None

    if conn is None:
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        _thread_local.connection = conn
        _thread_local.path = db_path

    try:
        yield conn
    except Exception:
        conn.rollback()
        raise


def close_connection():
    conn = getattr(_thread_local, 'connection', None)
    if conn is not None:
        conn.close()
    _thread_local.connection = None
    _thread_local.path = None


def init_db():
    """Initialize database tables if they don't exist."""
    with get_connection() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS characters (
                id TEXT PRIMARY KEY,
                name TEXT,
                data TEXT,
                updated_at INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                character_id TEXT,
                data TEXT,
                last_updated INTEGER
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_character ON sessions(character_id)")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                data TEXT
            )
        """)

        conn.commit()
    logger.info(f"[DB] Initialized database at {get_db_path()}")


# ============================================================================
# CHARACTER OPERATIONS
# ============================================================================

def db_get_all_characters() -> List[Character]:
    """Get all characters, most recently updated first."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT data FROM characters ORDER BY updated_at DESC")
        return [Character.model_validate(json.loads(row['data'])) for row in cursor.fetchall()]


def db_get_character(character_id: str) -> Optional[Character]:
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT data FROM characters WHERE id = ?", (character_id,))
        row = cursor.fetchone()
        if not row:
            return None
        return Character.model_validate(json.loads(row['data']))


def db_save_character(character: Character) -> bool:
    """Save or update a character."""
    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            data_json = json.dumps(character.to_json_dict(), ensure_ascii=False)
            cursor.execute("""
                INSERT OR REPLACE INTO characters (id, name, data, updated_at)
                VALUES (?, ?, ?, ?)
            """, (character.id, character.name, data_json, now_ms()))
            conn.commit()
            return True
    except sqlite3.Error as e:
        logger.error(f"[DB] Error saving character {character.id}: {e}")
        return False


def db_delete_character(character_id: str) -> bool:
    """Delete a character together with all of its chat sessions."""
    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM sessions WHERE character_id = ?", (character_id,))
            removed_sessions = cursor.rowcount
            cursor.execute("DELETE FROM characters WHERE id = ?", (character_id,))
            deleted = cursor.rowcount > 0
            conn.commit()
            if deleted:
                logger.info(f"[DB] Deleted character {character_id} and {removed_sessions} sessions")
            return deleted
    except sqlite3.Error as e:
        logger.error(f"[DB] Error deleting character {character_id}: {e}")
        return False


# ============================================================================
# SESSION OPERATIONS
# ============================================================================

def db_get_session(session_id: str) -> Optional[ChatSession]:
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT data FROM sessions WHERE id = ?", (session_id,))
        row = cursor.fetchone()
        if not row:
            return None
        return ChatSession.model_validate(json.loads(row['data']))


def db_get_sessions_for_character(character_id: str) -> List[ChatSession]:
    """Sessions of one character, most recently updated first."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT data FROM sessions
            WHERE character_id = ?
            ORDER BY last_updated DESC
        """, (character_id,))
        return [ChatSession.model_validate(json.loads(row['data'])) for row in cursor.fetchall()]


def db_save_session(session: ChatSession) -> bool:
    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            data_json = json.dumps(session.to_json_dict(), ensure_ascii=False)
            cursor.execute("""
                INSERT OR REPLACE INTO sessions (id, character_id, data, last_updated)
                VALUES (?, ?, ?, ?)
            """, (session.id, session.character_id, data_json, session.last_updated))
            conn.commit()
            return True
    except sqlite3.Error as e:
        logger.error(f"[DB] Error saving session {session.id}: {e}")
        return False


def db_delete_session(session_id: str) -> bool:
    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            conn.commit()
            return cursor.rowcount > 0
    except sqlite3.Error as e:
        logger.error(f"[DB] Error deleting session {session_id}: {e}")
        return False


# ============================================================================
# SETTINGS OPERATIONS
# ============================================================================

def db_get_settings() -> AppSettings:
    """Stored settings, or the defaults when nothing has been saved yet."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT data FROM settings WHERE key = ?", (SETTINGS_KEY,))
        row = cursor.fetchone()
        if not row:
            return AppSettings()
        return AppSettings.model_validate(json.loads(row['data']))


def db_save_settings(settings: AppSettings) -> bool:
    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT OR REPLACE INTO settings (key, data) VALUES (?, ?)",
                (SETTINGS_KEY, json.dumps(settings.to_json_dict(), ensure_ascii=False)),
            )
            conn.commit()
            return True
    except sqlite3.Error as e:
        logger.error(f"[DB] Error saving settings: {e}")
        return False

"""
Persistent storage for the chat history tree using SQLite.

The tree, the active chat path and the legacy folder table are kept as JSON
values in a small key/value table of a local SQLite database
(``Asset/chat_history.db`` inside the project root).  The tree is written as
one value so that a saved state is always a complete, consistent snapshot.

Databases written before the tree existed hold a flat ``chats`` list
instead; :meth:`HistoryStore.load` migrates it on first load.
"""

import json
import logging
import sqlite3

from .history_api import ChatHistoryApi
from .legacy import create_chat_history_from_legacy_chats
from .models import ChatHistory, ChatFolder, Path, item_from_dict
from .paths import asset_path
from .settings import Settings

log = logging.getLogger("chat_history")

DB_FILE_NAME = "chat_history.db"

KEY_HISTORY = "chatHistory"
KEY_ACTIVE_PATH = "activeChatPath"
KEY_FOLDERS = "folders"
KEY_LEGACY_CHATS = "chats"


class HistoryStore:
    """Load / save pair for :class:`ChatHistoryApi` state."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = db_path or asset_path(DB_FILE_NAME)
        self._conn: sqlite3.Connection = sqlite3.connect(
            self._db_path, check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_tables(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key   TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        self._conn.commit()

    def _get(self, key: str):
        row = self._conn.execute(
            "SELECT value FROM meta WHERE key=?", (key,),
        ).fetchone()
        if not row or row[0] is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            log.warning("[STORE] Ignoring unreadable value for %r", key)
            return None

    def _put(self, key: str, value) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
            (key, json.dumps(value, ensure_ascii=False)),
        )

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self, settings: Settings | None = None,
             ) -> tuple[ChatHistory | None, Path, dict[str, dict]]:
        """Return ``(history, active_path, legacy_folders)``.

        *history* is ``None`` when nothing has been saved yet.
        """
        settings = settings or Settings()
        folders = self._get(KEY_FOLDERS) or {}
        active_path = self._get(KEY_ACTIVE_PATH) or []

        raw_history = self._get(KEY_HISTORY)
        history: ChatHistory | None = None
        if isinstance(raw_history, dict):
            item = item_from_dict(raw_history)
            if isinstance(item, ChatFolder):
                history = item

        legacy_chats = self._get(KEY_LEGACY_CHATS)
        if history is None and isinstance(legacy_chats, list) and legacy_chats:
            log.info("[STORE] Migrating %d legacy chat(s) into the tree.",
                     len(legacy_chats))
            history = create_chat_history_from_legacy_chats(
                legacy_chats, folders, settings.default_chat_config,
            )
            active_path = [0]
            self._put(KEY_HISTORY, history.to_dict())
            self._put(KEY_ACTIVE_PATH, active_path)
            self._conn.execute("DELETE FROM meta WHERE key=?",
                               (KEY_LEGACY_CHATS,))
            self._conn.commit()

        return history, active_path, folders

    def load_api(self, settings: Settings | None = None) -> ChatHistoryApi:
        """Build an initialized :class:`ChatHistoryApi` from stored state."""
        history, active_path, folders = self.load(settings)
        api = ChatHistoryApi(history, active_path, settings=settings,
                             legacy_folders=folders)
        api.ensure_initialized()
        return api

    def save_state(self, history: ChatHistory, active_path: Path,
                   folders: dict[str, dict] | None = None) -> None:
        with self._conn:
            self._put(KEY_HISTORY, history.to_dict())
            self._put(KEY_ACTIVE_PATH, list(active_path))
            if folders is not None:
                self._put(KEY_FOLDERS, folders)
        log.debug("[STORE] Saved tree (active path %s)", active_path)

    def save(self, api: ChatHistoryApi) -> None:
        """Write *api*'s current tree, active path and folders."""
        history, active_path = api.snapshot()
        self.save_state(history, active_path, api.legacy_folders)

    def attach(self, api: ChatHistoryApi) -> None:
        """Save *api*'s state after every change it publishes."""
        def _on_publish(history: ChatHistory, active_path: Path) -> None:
            self.save_state(history, active_path, api.legacy_folders)

        api.subscribe(_on_publish)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

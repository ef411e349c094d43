"""
Import and export of chat collections.

Three payload shapes are accepted by :func:`import_chats`:

* **Legacy list** — a bare JSON list of flat chat records
  ``{id, title, folder?, messages, config, titleSet}`` where ``folder`` is a
  folder *name*.
* **Version 1** — ``{"version": 1, "chats": [...], "folders": {...}}``:
  the same flat records, but ``folder`` is a key into the ``folders`` side
  table ``{folderId: {id, name, expanded, order, color?}}``.
* **Version 2** — ``{"version": 2, "chatHistory": {...}}``: a ready-made
  tree as produced by :func:`export_chat_history`.

Payloads are validated (and repaired where possible) *before* the tree is
touched; anything that cannot be repaired raises
:exc:`MalformedImportError` and leaves the tree as it was.
"""

import copy
import json
import logging
import uuid

import requests

from .history_api import ChatHistoryApi
from .models import (
    VALID_ROLES,
    ChatConfig,
    ChatFolder,
    ChatHistory,
    ChatThread,
    is_folder_dict,
    item_from_dict,
    new_chat_history,
)
from .tree import renumber

log = logging.getLogger("chat_history")

EXPORT_VERSION = 2

#: Seconds to wait for a remote export before giving up.
FETCH_TIMEOUT = 15


class MalformedImportError(ValueError):
    """An import payload failed shape validation.

    Attributes
    ----------
    reason : str
        Human-readable description of the first problem found.
    version : int | None
        Envelope version (``None`` for the legacy list format or when the
        payload could not be classified).
    """

    def __init__(self, reason: str, *, version: int | None = None) -> None:
        self.reason = reason
        self.version = version
        super().__init__(reason)

    def __str__(self) -> str:  # noqa: D105
        if self.version is not None:
            return f"Invalid export (version {self.version}): {self.reason}"
        return f"Invalid chats data format: {self.reason}"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _validate_messages(messages, where: str, version: int | None) -> None:
    if not isinstance(messages, list):
        raise MalformedImportError(f"{where}: 'messages' must be a list",
                                   version=version)
    for i, msg in enumerate(messages):
        if not isinstance(msg, dict):
            raise MalformedImportError(f"{where}: message {i} is not an "
                                       "object", version=version)
        if msg.get("role") not in VALID_ROLES:
            raise MalformedImportError(
                f"{where}: message {i} has unknown role {msg.get('role')!r}",
                version=version,
            )
        if not isinstance(msg.get("content"), str):
            raise MalformedImportError(f"{where}: message {i} content must "
                                       "be a string", version=version)


def _validate_and_fix_chat(chat, index: int, default_config: ChatConfig,
                           version: int | None) -> None:
    where = f"chat {index}"
    if not isinstance(chat, dict):
        raise MalformedImportError(f"{where} is not an object",
                                   version=version)
    if not isinstance(chat.get("title"), str):
        raise MalformedImportError(f"{where}: 'title' must be a string",
                                   version=version)
    _validate_messages(chat.get("messages"), where, version)
    if not isinstance(chat.get("id"), str) or not chat["id"]:
        chat["id"] = str(uuid.uuid4())
    if not isinstance(chat.get("config"), dict):
        chat["config"] = default_config.to_dict()
    if not isinstance(chat.get("titleSet"), bool):
        chat["titleSet"] = False
    folder = chat.get("folder")
    if folder is not None and not isinstance(folder, str):
        raise MalformedImportError(f"{where}: 'folder' must be a string",
                                   version=version)


def validate_and_fix_chats(chats, default_config: ChatConfig,
                           version: int | None = None) -> None:
    """Check a list of flat chat records in place, filling in defaults."""
    if not isinstance(chats, list):
        raise MalformedImportError("chats must be a list", version=version)
    for i, chat in enumerate(chats):
        _validate_and_fix_chat(chat, i, default_config, version)


def validate_export_v1(data: dict, default_config: ChatConfig) -> None:
    folders = data.get("folders")
    if not isinstance(folders, dict):
        raise MalformedImportError("'folders' must be an object", version=1)
    for folder_id, folder in folders.items():
        if not isinstance(folder, dict):
            raise MalformedImportError(f"folder {folder_id!r} is not an "
                                       "object", version=1)
        if not isinstance(folder.get("name"), str):
            raise MalformedImportError(f"folder {folder_id!r}: 'name' must "
                                       "be a string", version=1)
        if not isinstance(folder.get("order", 0), int):
            raise MalformedImportError(f"folder {folder_id!r}: 'order' must "
                                       "be an integer", version=1)
        folder.setdefault("id", folder_id)
        folder.setdefault("expanded", False)
        folder.setdefault("order", 0)
    chats = data.get("chats")
    if chats is None:
        return
    validate_and_fix_chats(chats, default_config, version=1)
    for i, chat in enumerate(chats):
        if chat.get("folder") and chat["folder"] not in folders:
            raise MalformedImportError(
                f"chat {i} refers to unknown folder {chat['folder']!r}",
                version=1,
            )


def _validate_tree_item(item, where: str, default_config: ChatConfig) -> None:
    if not isinstance(item, dict):
        raise MalformedImportError(f"{where} is not an object", version=2)
    if not isinstance(item.get("title", ""), str):
        raise MalformedImportError(f"{where}: 'title' must be a string",
                                   version=2)
    if not isinstance(item.get("config"), dict):
        item["config"] = default_config.to_dict()
    if not isinstance(item.get("id"), str) or not item["id"]:
        item["id"] = str(uuid.uuid4())
    if is_folder_dict(item):
        children = item["children"]
        if not isinstance(children, list):
            raise MalformedImportError(f"{where}: 'children' must be a list",
                                       version=2)
        for i, child in enumerate(children):
            _validate_tree_item(child, f"{where}/{i}", default_config)
    else:
        _validate_messages(item.get("messages"), where, 2)
        if not isinstance(item.get("titleSet"), bool):
            item["titleSet"] = False


def validate_export_v2(data: dict, default_config: ChatConfig) -> None:
    history = data.get("chatHistory")
    if not is_folder_dict(history):
        raise MalformedImportError("'chatHistory' must be a folder",
                                   version=2)
    _validate_tree_item(history, "chatHistory", default_config)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def create_chat_history_from_legacy_chats(
    legacy_chats: list[dict],
    legacy_folders: dict[str, dict],
    default_config: ChatConfig,
) -> ChatHistory:
    """Build a fresh tree from flat chat records.

    Chats without a folder become direct children of the root.  Each
    distinct ``folder`` key becomes one folder, created where it is first
    seen, carrying the name, ``expanded`` flag and colour from
    *legacy_folders*.  The legacy ``order`` field is not part of the tree.
    """
    history = new_chat_history(ChatConfig.from_dict(default_config.to_dict()))
    folders: dict[str, ChatFolder] = {}

    for chat in legacy_chats:
        thread = ChatThread.from_dict(chat)
        folder_key = chat.get("folder")
        if not folder_key:
            thread.path = [len(history.children)]
            history.children.append(thread)
            continue

        folder = folders.get(folder_key)
        if folder is None:
            # First time this folder shows up.
            meta = legacy_folders.get(folder_key, {})
            folder = ChatFolder(
                id=meta.get("id") or folder_key,
                title=meta.get("name", folder_key),
                config=ChatConfig.from_dict(default_config.to_dict()),
                path=[len(history.children)],
                expanded=bool(meta.get("expanded", False)),
                color=meta.get("color"),
            )
            folders[folder_key] = folder
            history.children.append(folder)

        thread.path = [*folder.path, len(folder.children)]
        folder.children.append(thread)

    return history


def _offset_folder_orders(folders: dict[str, dict], offset: int) -> None:
    for folder in folders.values():
        folder["order"] = folder.get("order", 0) + offset


def _import_legacy_list(api: ChatHistoryApi, chats: list) -> int:
    default_config = api.settings.default_chat_config
    validate_and_fix_chats(chats, default_config)

    # Folder names in the legacy list become brand new folders.
    name_to_id: dict[str, str] = {}
    for chat in chats:
        name = chat.get("folder")
        if name:
            if name not in name_to_id:
                name_to_id[name] = str(uuid.uuid4())
            chat["folder"] = name_to_id[name]

    new_folders = {
        folder_id: {"id": folder_id, "name": name, "expanded": False,
                    "order": index}
        for index, (name, folder_id) in enumerate(name_to_id.items())
    }
    folders = api.legacy_folders
    _offset_folder_orders(folders, len(new_folders))
    folders.update(new_folders)

    imported = create_chat_history_from_legacy_chats(chats, folders,
                                                     default_config)
    api.merge_chat_history(imported, folders)
    return len(chats)


def _import_v1(api: ChatHistoryApi, data: dict) -> int:
    default_config = api.settings.default_chat_config
    validate_export_v1(data, default_config)

    existing = api.legacy_folders
    _offset_folder_orders(existing, len(data["folders"]))
    # Entries already in the table win over imported ones with the same key.
    folders = {**copy.deepcopy(data["folders"]), **existing}

    chats = data.get("chats")
    if not chats:
        api.set_legacy_folders(folders)
        return 0
    imported = create_chat_history_from_legacy_chats(chats, folders,
                                                     default_config)
    api.merge_chat_history(imported, folders)
    return len(chats)


def _import_v2(api: ChatHistoryApi, data: dict) -> int:
    validate_export_v2(data, api.settings.default_chat_config)
    imported = item_from_dict(data["chatHistory"])
    imported.path = []
    renumber(imported)
    api.merge_chat_history(imported)
    return len(imported.children)


def parse_import(raw):
    """Decode *raw* (``str``/``bytes`` JSON or already-decoded data)."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedImportError(f"not valid JSON ({exc})") from exc
    return raw


def import_chats(api: ChatHistoryApi, raw) -> int:
    """Merge an import payload of any supported shape into *api*'s tree.

    Returns the number of top-level chats or items imported.

    Raises
    ------
    MalformedImportError
        When the payload cannot be classified or fails validation.  The
        tree is left untouched in that case.
    """
    data = copy.deepcopy(parse_import(raw))
    try:
        if isinstance(data, list):
            count = _import_legacy_list(api, data)
        elif isinstance(data, dict):
            version = data.get("version")
            if version == 1:
                count = _import_v1(api, data)
            elif version == EXPORT_VERSION:
                count = _import_v2(api, data)
            else:
                raise MalformedImportError(
                    f"unsupported export version {version!r}",
                )
        else:
            raise MalformedImportError("expected a JSON list or object")
    except MalformedImportError as exc:
        log.warning("[IMPORT] Rejected import: %s", exc)
        raise
    log.info("[IMPORT] Imported %d item(s).", count)
    return count


def import_chats_from_file(api: ChatHistoryApi, file_path: str) -> int:
    with open(file_path, "r", encoding="utf-8") as fh:
        raw = fh.read()
    return import_chats(api, raw)


def fetch_import(url: str, timeout: float = FETCH_TIMEOUT):
    """Download an export payload from *url* and return the decoded JSON."""
    log.debug("[IMPORT] GET %s", url)
    try:
        response = requests.get(url, headers={"Accept": "application/json"},
                                timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise MalformedImportError(f"could not download {url}: {exc}") \
            from exc
    try:
        return response.json()
    except ValueError as exc:
        raise MalformedImportError(f"{url} did not return JSON") from exc


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def export_chat_history(api: ChatHistoryApi) -> dict:
    """Return the version-2 export envelope for *api*'s tree."""
    return {"chatHistory": api.history.to_dict(), "version": EXPORT_VERSION}


def write_export(api: ChatHistoryApi, file_path: str) -> None:
    """Write all chats to *file_path* as a version-2 JSON export."""
    with open(file_path, "w", encoding="utf-8") as fh:
        json.dump(export_chat_history(api), fh, ensure_ascii=False, indent=2)

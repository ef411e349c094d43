"""
Mutation API for the chat history tree.

:class:`ChatHistoryApi` owns the published tree and the active chat path of
one session.  It is the only sanctioned writer: every operation copies the
current tree, applies its change to the copy, renumbers the affected paths
and then publishes the copy together with a corrected active path in one
step.  An operation that raises leaves the published tree untouched.

Selection healing
-----------------
Before publishing, the active item is looked up again *by identifier* in the
new tree, so inserts, deletes and moves elsewhere never leave the active
path pointing at a different (or no) item.  When the active item itself is
removed the selection moves to the first thread of its former parent, then
to the first thread of the tree, and is cleared only if neither exists.

Paths that do not resolve, or that resolve to the wrong kind of item, make
the addressed operation a silent no-op (the return value says so).
"""

import copy
import logging
import threading
from dataclasses import replace
from typing import Callable, Literal

from .models import (
    VALID_ROLES,
    ChatConfig,
    ChatFolder,
    ChatHistory,
    ChatItem,
    ChatThread,
    Message,
    Path,
    new_chat_history,
    new_id,
)
from .settings import Settings
from .tree import (
    collect_ids,
    filter_chat_items,
    find_chat_folder_by_path,
    find_chat_item_by_path,
    find_chat_item_parent_by_path,
    find_chat_path_by_id,
    find_chat_thread_by_path,
    find_first_available_folder_title,
    find_first_available_title,
    find_first_chat_thread,
    has_at_least_n_chat_threads,
    is_path_within,
    is_valid_chat_path,
    iter_chat_items,
    renumber,
)

log = logging.getLogger("chat_history")

DEFAULT_CHAT_TITLE = "New Chat"
DEFAULT_FOLDER_TITLE = "New Folder"
CLONE_TITLE_PREFIX = "Copy of"

Listener = Callable[[ChatHistory, Path], None]


class ChatHistoryApi:
    """Single-writer owner of a chat history tree and its active path."""

    def __init__(
        self,
        history: ChatHistory | None = None,
        active_chat_path: Path | None = None,
        settings: Settings | None = None,
        legacy_folders: dict[str, dict] | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._settings = settings or Settings()
        self._listeners: list[Listener] = []
        # Folder metadata of the pre-tree storage format.  Only the legacy
        # import paths read or write it.
        self._legacy_folders: dict[str, dict] = copy.deepcopy(
            legacy_folders or {},
        )
        self._history: ChatHistory = new_chat_history(
            replace(self._settings.default_chat_config),
        )
        self._active_chat_path: Path = []
        if history is not None:
            self.set_chat_history(history, active_chat_path or [])

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def history(self) -> ChatHistory:
        """A deep copy of the published tree."""
        with self._lock:
            return copy.deepcopy(self._history)

    @property
    def active_chat_path(self) -> Path:
        with self._lock:
            return list(self._active_chat_path)

    @property
    def root_path(self) -> Path:
        return []

    @property
    def legacy_folders(self) -> dict[str, dict]:
        with self._lock:
            return copy.deepcopy(self._legacy_folders)

    def snapshot(self) -> tuple[ChatHistory, Path]:
        """Return a consistent ``(history, active_path)`` copy pair."""
        with self._lock:
            return copy.deepcopy(self._history), list(self._active_chat_path)

    def get_chat_item(self, path: Path) -> ChatItem | None:
        """Resolve *path* against the published tree (returns a copy)."""
        with self._lock:
            item = find_chat_item_by_path(self._history, path)
            return copy.deepcopy(item)

    def get_chat_thread_title(self, path: Path) -> str | None:
        with self._lock:
            thread = find_chat_thread_by_path(self._history, path)
            return thread.title if thread else None

    def active_chat_thread(self) -> ChatThread | None:
        with self._lock:
            thread = find_chat_thread_by_path(
                self._history, self._active_chat_path,
            )
            return copy.deepcopy(thread)

    def find_chat_path_by_id(self, item_id: str) -> Path | None:
        with self._lock:
            return find_chat_path_by_id(self._history, item_id)

    def no_active_chat_thread(self) -> bool:
        with self._lock:
            return not self._active_chat_path

    def is_chat_history_empty(self) -> bool:
        """Return *True* when the tree holds no thread at all."""
        with self._lock:
            return not has_at_least_n_chat_threads(self._history, 1)

    def fully_initialized(self) -> bool:
        """Return *True* once the root is a configured folder."""
        with self._lock:
            h = self._history
            return (
                isinstance(h, ChatFolder)
                and isinstance(h.config, ChatConfig)
                and isinstance(h.children, list)
            )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        """Call *listener(history, active_path)* after every publish.

        The arguments are the published objects themselves; listeners must
        treat them as read-only.
        """
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _cloned_chat_history(self) -> ChatHistory:
        return copy.deepcopy(self._history)

    def _publish(self, history: ChatHistory, active_path: Path | None) -> None:
        if active_path is None or not is_valid_chat_path(history, active_path):
            first = find_first_chat_thread(history)
            active_path = list(first.path) if first else []
        self._history = history
        self._active_chat_path = list(active_path)
        log.debug("[TREE] Published tree; active path %s",
                  self._active_chat_path)
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._history, self._active_chat_path)

    def _tracked_active_path(self, history: ChatHistory) -> Path | None:
        """Locate the currently active item inside *history*.

        Returns ``[]`` when nothing is selected and ``None`` when the
        selected item no longer exists in *history*.
        """
        if not self._active_chat_path:
            return []
        item = find_chat_item_by_path(self._history, self._active_chat_path)
        if item is None:
            return None
        return find_chat_path_by_id(history, item.id)

    def set_chat_history(self, history: ChatHistory, active_path: Path) -> None:
        """Install *history* as the whole tree.

        The tree is renumbered from the root and duplicate ids are replaced
        by fresh ones, first occurrence kept.  The active path becomes
        *active_path* if it resolves in the new tree, otherwise the first
        thread, otherwise no selection.
        """
        with self._lock:
            history = copy.deepcopy(history)
            history.path = []
            _reassign_colliding_ids(history, set())
            renumber(history)
            if is_valid_chat_path(history, active_path):
                target = list(active_path)
            else:
                first = find_first_chat_thread(history)
                target = list(first.path) if first else []
                log.info("[TREE] Requested active path %s does not resolve; "
                         "selecting %s.", active_path, target)
            self._publish(history, target)

    def set_active_chat_path(self, path: Path) -> bool:
        """Select the item at *path* (``[]`` clears the selection)."""
        with self._lock:
            if not is_valid_chat_path(self._history, path):
                log.debug("[TREE] Ignoring unresolvable active path %s", path)
                return False
            self._active_chat_path = list(path)
            self._notify()
            return True

    def reset_active_chat_path_if_invalid(self) -> None:
        with self._lock:
            if not is_valid_chat_path(self._history, self._active_chat_path):
                log.info("[TREE] Active path %s is stale; re-selecting.",
                         self._active_chat_path)
                self._publish(self._history, None)

    def ensure_initialized(self) -> None:
        """First-run setup: guarantee a configured root and one thread."""
        with self._lock:
            if not self.fully_initialized():
                self.set_chat_history(
                    new_chat_history(
                        replace(self._settings.default_chat_config),
                    ),
                    [],
                )
            if self.is_chat_history_empty():
                self.append_and_activate_new_chat_thread(self.root_path)
            else:
                self.reset_active_chat_path_if_invalid()

    # ------------------------------------------------------------------
    # Thread / folder creation
    # ------------------------------------------------------------------

    def _generate_default_chat(self, parent: ChatFolder) -> ChatThread:
        messages = []
        if self._settings.default_system_message:
            messages.append(
                Message("system", self._settings.default_system_message),
            )
        return ChatThread(
            title=find_first_available_title(parent, DEFAULT_CHAT_TITLE),
            config=replace(parent.config),
            messages=messages,
            title_set=False,
        )

    def _insert_default_chat_thread(
        self, root: ChatHistory, parent_path: Path, index: int,
    ) -> ChatThread | None:
        parent = find_chat_folder_by_path(root, parent_path)
        if parent is None:
            return None
        index = max(0, min(index, len(parent.children)))
        thread = self._generate_default_chat(parent)
        parent.children.insert(index, thread)
        renumber(parent, index)
        return thread

    def insert_chat_thread(self, parent_path: Path, index: int) -> Path | None:
        """Insert a default thread at *index* of the folder at *parent_path*.

        Returns the new thread's path, or ``None`` if *parent_path* is not a
        folder.  The selection keeps pointing at the same item.
        """
        with self._lock:
            history = self._cloned_chat_history()
            thread = self._insert_default_chat_thread(history, parent_path,
                                                      index)
            if thread is None:
                log.debug("[TREE] insert_chat_thread: %s is not a folder",
                          parent_path)
                return None
            self._publish(history, self._tracked_active_path(history))
            log.debug("[TREE] Inserted %r at %s", thread.title, thread.path)
            return list(thread.path)

    def append_and_activate_new_chat_thread(self,
                                            parent_path: Path) -> Path | None:
        """Append a default thread to *parent_path* and select it."""
        with self._lock:
            history = self._cloned_chat_history()
            parent = find_chat_folder_by_path(history, parent_path)
            if parent is None:
                log.debug("[TREE] append_and_activate: %s is not a folder",
                          parent_path)
                return None
            thread = self._insert_default_chat_thread(
                history, parent_path, len(parent.children),
            )
            self._publish(history, thread.path)
            return list(thread.path)

    def prepend_new_chat_thread(self, parent_path: Path) -> Path | None:
        """Insert a default thread as the first child of *parent_path*.

        An active thread among the shifted siblings keeps being selected
        (its last path index moves up by one).
        """
        return self.insert_chat_thread(parent_path, 0)

    def reset_chat_history_to_single_default_chat_thread(self) -> Path:
        with self._lock:
            history = self._cloned_chat_history()
            history.children = []
            thread = self._insert_default_chat_thread(history, [], 0)
            log.info("[TREE] Chat history cleared.")
            self._publish(history, thread.path)
            return list(thread.path)

    def insert_chat_folder(self, parent_path: Path, index: int,
                           title: str | None = None) -> Path | None:
        """Insert an empty folder at *index* of the folder at *parent_path*."""
        with self._lock:
            history = self._cloned_chat_history()
            parent = find_chat_folder_by_path(history, parent_path)
            if parent is None:
                log.debug("[TREE] insert_chat_folder: %s is not a folder",
                          parent_path)
                return None
            index = max(0, min(index, len(parent.children)))
            folder = ChatFolder(
                title=title or find_first_available_folder_title(
                    parent, DEFAULT_FOLDER_TITLE,
                ),
                config=replace(parent.config),
                expanded=True,
            )
            parent.children.insert(index, folder)
            renumber(parent, index)
            self._publish(history, self._tracked_active_path(history))
            return list(folder.path)

    def append_chat_folder(self, parent_path: Path,
                           title: str | None = None) -> Path | None:
        with self._lock:
            parent = find_chat_folder_by_path(self._history, parent_path)
            if parent is None:
                return None
            return self.insert_chat_folder(parent_path, len(parent.children),
                                           title)

    def bulk_append_chat_threads(self, threads: list[ChatThread]) -> None:
        """Append ready-made *threads* to the root folder."""
        with self._lock:
            history = self._cloned_chat_history()
            taken = collect_ids(history)
            start = len(history.children)
            for thread in threads:
                thread = copy.deepcopy(thread)
                _reassign_colliding_ids(thread, taken)
                history.children.append(thread)
            renumber(history, start)
            self._publish(history, self._tracked_active_path(history))

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def _delete_chat_item(self, path: Path, replace_if_empty: bool,
                          want_folder: bool) -> bool:
        with self._lock:
            history = self._cloned_chat_history()
            item = find_chat_item_by_path(history, path)
            parent = find_chat_item_parent_by_path(history, path)
            if (item is None or parent is None
                    or isinstance(item, ChatFolder) != want_folder):
                log.debug("[TREE] delete: nothing to delete at %s", path)
                return False

            index = path[-1]
            parent.children.pop(index)
            renumber(parent, index)

            if replace_if_empty and not parent.children:
                self._insert_default_chat_thread(history, parent.path, 0)
            if not has_at_least_n_chat_threads(history, 1):
                log.info("[TREE] Last thread deleted; inserting a default "
                         "thread.")
                self._insert_default_chat_thread(
                    history, [], len(history.children),
                )

            active = self._tracked_active_path(history)
            if active is None:
                first = (find_first_chat_thread(parent)
                         or find_first_chat_thread(history))
                active = list(first.path) if first else []
                log.info("[TREE] Active item at %s deleted; selecting %s.",
                         self._active_chat_path, active)
            self._publish(history, active)
            log.debug("[TREE] Deleted %s", path)
            return True

    def delete_chat_thread(self, path: Path,
                           replace_if_empty: bool = False) -> bool:
        """Remove the thread at *path*.

        With *replace_if_empty* a default thread is put into the parent if
        it would otherwise be left empty.  The tree never ends up without
        any thread: deleting the last one inserts a default thread at the
        root.
        """
        return self._delete_chat_item(path, replace_if_empty,
                                      want_folder=False)

    def delete_chat_folder(self, path: Path,
                           replace_if_empty: bool = False) -> bool:
        """Remove the folder at *path* together with everything inside it."""
        return self._delete_chat_item(path, replace_if_empty,
                                      want_folder=True)

    # ------------------------------------------------------------------
    # Move / clone
    # ------------------------------------------------------------------

    def _move_chat_item(self, source_path: Path, folder_path: Path,
                        expand_folder: bool, want_folder: bool) -> Path | None:
        with self._lock:
            history = self._cloned_chat_history()
            item = find_chat_item_by_path(history, source_path)
            folder = find_chat_folder_by_path(history, folder_path)
            parent = find_chat_item_parent_by_path(history, source_path)
            if (item is None or folder is None or parent is None
                    or isinstance(item, ChatFolder) != want_folder):
                log.debug("[TREE] move: cannot move %s into %s",
                          source_path, folder_path)
                return None
            if want_folder and is_path_within(folder_path, source_path):
                log.debug("[TREE] move: %s is inside %s", folder_path,
                          source_path)
                return None

            index = source_path[-1]
            parent.children.pop(index)
            renumber(parent, index)
            folder.children.append(item)
            renumber(folder, len(folder.children) - 1)
            if expand_folder:
                folder.expanded = True

            self._publish(history, self._tracked_active_path(history))
            log.debug("[TREE] Moved %s -> %s", source_path, item.path)
            return list(item.path)

    def move_chat_thread_to_folder(self, thread_path: Path, folder_path: Path,
                                   expand_folder: bool = False) -> Path | None:
        """Append the thread at *thread_path* to the folder at *folder_path*.

        Returns the thread's new path, or ``None`` when either path does not
        resolve to the right kind of item.
        """
        return self._move_chat_item(thread_path, folder_path, expand_folder,
                                    want_folder=False)

    def move_chat_folder(self, source_path: Path, folder_path: Path,
                         expand_folder: bool = False) -> Path | None:
        """Re-parent a whole folder branch under *folder_path*."""
        return self._move_chat_item(source_path, folder_path, expand_folder,
                                    want_folder=True)

    def clone_chat_thread(self, path: Path) -> Path | None:
        """Insert a copy of the thread at *path* as its parent's first child.

        The copy gets a new id and a ``"Copy of <title>"`` title; the
        original thread becomes (or stays) the active one.  Returns the
        path of the copy.
        """
        with self._lock:
            history = self._cloned_chat_history()
            source = find_chat_thread_by_path(history, path)
            parent = find_chat_item_parent_by_path(history, path)
            if source is None or parent is None:
                log.debug("[TREE] clone: no thread at %s", path)
                return None
            clone = copy.deepcopy(source)
            clone.id = new_id()
            clone.title = find_first_available_title(
                parent, f"{CLONE_TITLE_PREFIX} {source.title}",
                bare_first=True,
            )
            parent.children.insert(0, clone)
            renumber(parent)
            self._publish(history, source.path)
            return list(clone.path)

    def clone_active_chat_thread(self) -> Path | None:
        with self._lock:
            return self.clone_chat_thread(self._active_chat_path)

    # ------------------------------------------------------------------
    # Field updates
    # ------------------------------------------------------------------

    def _set_chat_item_properties(self, path: Path, want_folder: bool,
                                  **changes) -> bool:
        with self._lock:
            item = find_chat_item_by_path(self._history, path)
            if item is None or isinstance(item, ChatFolder) != want_folder:
                log.debug("[TREE] Not updating %s at %s: wrong item kind",
                          sorted(changes), path)
                return False
            if all(getattr(item, k) == v for k, v in changes.items()):
                return False
            history = self._cloned_chat_history()
            target = find_chat_item_by_path(history, path)
            for key, value in changes.items():
                setattr(target, key, value)
            self._publish(history, self._active_chat_path)
            return True

    def set_chat_folder_title(self, path: Path, title: str) -> bool:
        return self._set_chat_item_properties(path, True, title=title)

    def set_chat_folder_color(self, path: Path, color: str | None) -> bool:
        return self._set_chat_item_properties(path, True, color=color)

    def set_chat_folder_expanded(self, path: Path, expanded: bool) -> bool:
        return self._set_chat_item_properties(path, True, expanded=expanded)

    def set_chat_thread_title(self, path: Path, title: str,
                              title_set: bool | None = None) -> bool:
        """Rename the thread at *path*.

        Pass *title_set* to also record whether the title was chosen
        explicitly (auto-titling leaves it ``False``).
        """
        changes: dict = {"title": title}
        if title_set is not None:
            changes["title_set"] = title_set
        return self._set_chat_item_properties(path, False, **changes)

    def set_config_for_active_chat_thread(self, config: ChatConfig) -> bool:
        with self._lock:
            return self._set_chat_item_properties(
                self._active_chat_path, False, config=replace(config),
            )

    # ------------------------------------------------------------------
    # Messages of the active thread
    # ------------------------------------------------------------------

    def _mutate_chat_thread(self, path: Path,
                            mutate: Callable[[ChatThread], None]) -> bool:
        with self._lock:
            history = self._cloned_chat_history()
            thread = find_chat_thread_by_path(history, path)
            if thread is None:
                log.debug("[TREE] No thread at %s", path)
                return False
            mutate(thread)
            self._publish(history, self._active_chat_path)
            return True

    def _mutate_active_chat_thread(
            self, mutate: Callable[[ChatThread], None]) -> bool:
        with self._lock:
            return self._mutate_chat_thread(self._active_chat_path, mutate)

    def insert_active_chat_thread_message(self, message: Message,
                                          index: int) -> bool:
        """Insert *message* before position *index* of the active thread."""
        if message.role not in VALID_ROLES:
            log.debug("[TREE] Rejecting message with role %r", message.role)
            return False
        message = replace(message)
        return self._mutate_active_chat_thread(
            lambda t: t.messages.insert(index, message),
        )

    def append_message_to_active_chat_thread(self, message: Message) -> bool:
        with self._lock:
            thread = find_chat_thread_by_path(self._history,
                                              self._active_chat_path)
            if thread is None:
                return False
            return self.insert_active_chat_thread_message(
                message, len(thread.messages),
            )

    def set_active_chat_thread_message_role(self, role: str,
                                            index: int) -> bool:
        if role not in VALID_ROLES:
            log.debug("[TREE] Rejecting unknown role %r", role)
            return False

        def mutate(thread: ChatThread) -> None:
            thread.messages[index].role = role

        return self._mutate_active_chat_thread(mutate)

    def set_active_chat_thread_message_content(self, index: int,
                                               content: str) -> bool:
        def mutate(thread: ChatThread) -> None:
            thread.messages[index].content = content

        return self._mutate_active_chat_thread(mutate)

    def delete_active_chat_thread_message(self, index: int) -> bool:
        """Remove message *index*; negative indices are rejected."""
        if index < 0:
            return False
        return self._mutate_active_chat_thread(
            lambda t: t.messages.pop(index),
        )

    def delete_active_chat_thread_last_message(self) -> bool:
        with self._lock:
            thread = find_chat_thread_by_path(self._history,
                                              self._active_chat_path)
            if thread is None or not thread.messages:
                return False
            return self.delete_active_chat_thread_message(
                len(thread.messages) - 1,
            )

    def delete_active_chat_thread_messages_after_index(self,
                                                       index: int) -> bool:
        """Drop every message after *index* (used to regenerate a reply)."""
        def mutate(thread: ChatThread) -> None:
            del thread.messages[index + 1:]

        return self._mutate_active_chat_thread(mutate)

    def move_active_chat_thread_message(
        self, index: int, direction: Literal["up", "down"],
    ) -> bool:
        """Swap message *index* with its neighbour above or below.

        Callers must not move the first message up or the last one down:
        the swap target is not range-checked, so the first case wraps to
        the last message and the second raises :exc:`IndexError`.
        """
        new_index = index - 1 if direction == "up" else index + 1

        def mutate(thread: ChatThread) -> None:
            msgs = thread.messages
            msgs[index], msgs[new_index] = msgs[new_index], msgs[index]

        return self._mutate_active_chat_thread(mutate)

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def filtered_chat_history_children_by_title(
        self, title: str, keep_active_chat_thread: bool = False,
    ) -> list[ChatItem]:
        """Return the root's children restricted to threads matching *title*.

        Matching is a case-insensitive substring test.  With
        *keep_active_chat_thread* the active thread (and the folders leading
        to it) is always part of the result.
        """
        with self._lock:
            history = self._cloned_chat_history()
            active = list(self._active_chat_path)
        query = title.casefold()

        def predicate(thread: ChatThread) -> bool:
            if keep_active_chat_thread and thread.path == active:
                return True
            return query in thread.title.casefold()

        return filter_chat_items(history, predicate)

    # ------------------------------------------------------------------
    # Import support
    # ------------------------------------------------------------------

    def set_legacy_folders(self, folders: dict[str, dict]) -> None:
        with self._lock:
            self._legacy_folders = copy.deepcopy(folders)
            self._notify()

    def merge_chat_history(self, imported: ChatHistory,
                           legacy_folders: dict[str, dict] | None = None,
                           ) -> None:
        """Merge an imported tree into the published one.

        When the current root has children, the imported root's children
        are appended after them (ids already in use are replaced by fresh
        ones); otherwise the imported tree replaces the current one.  The
        active path is kept if it still resolves.  *legacy_folders*, when
        given, replaces the folder table in the same publish.
        """
        with self._lock:
            if legacy_folders is not None:
                self._legacy_folders = copy.deepcopy(legacy_folders)
            history = self._cloned_chat_history()
            if history.children:
                taken = collect_ids(history)
                for child in copy.deepcopy(imported.children):
                    _reassign_colliding_ids(child, taken)
                    history.children.append(child)
            else:
                history = copy.deepcopy(imported)
            log.info("[TREE] Merged %d imported item(s).",
                     len(imported.children))
            self.set_chat_history(history, self._active_chat_path)


def _reassign_colliding_ids(item: ChatItem, taken: set[str]) -> None:
    """Give *item* and its descendants fresh ids where *taken* has them."""
    items = [item]
    if isinstance(item, ChatFolder):
        items.extend(iter_chat_items(item))
    for node in items:
        if node.id in taken:
            node.id = new_id()
        taken.add(node.id)

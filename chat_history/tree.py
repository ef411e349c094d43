"""
Traversal helpers for the chat history tree.

Everything here is a pure function over an in-memory tree.  The only
function that writes is :func:`renumber`, which recomputes ``path`` fields
after a splice; :class:`chat_history.history_api.ChatHistoryApi` calls it
on its private working copy before publishing.
"""

from dataclasses import replace
from typing import Callable, Iterator

from .models import ChatFolder, ChatHistory, ChatItem, ChatThread, Path


# ---------------------------------------------------------------------------
# Address resolution
# ---------------------------------------------------------------------------

def find_chat_item_by_path(root: ChatHistory, path: Path) -> ChatItem | None:
    """Walk *path* from *root*.

    Returns ``None`` when an index is out of range or the walk would have
    to pass through a thread.  The empty path resolves to *root*.
    """
    item: ChatItem = root
    for index in path:
        if not isinstance(item, ChatFolder):
            return None
        if index < 0 or index >= len(item.children):
            return None
        item = item.children[index]
    return item


def find_chat_thread_by_path(root: ChatHistory, path: Path) -> ChatThread | None:
    item = find_chat_item_by_path(root, path)
    return item if isinstance(item, ChatThread) else None


def find_chat_folder_by_path(root: ChatHistory, path: Path) -> ChatFolder | None:
    item = find_chat_item_by_path(root, path)
    return item if isinstance(item, ChatFolder) else None


def find_chat_item_parent_by_path(root: ChatHistory,
                                  path: Path) -> ChatFolder | None:
    """Return the folder holding the item at *path* (``None`` for the root)."""
    if not path:
        return None
    return find_chat_folder_by_path(root, path[:-1])


def is_valid_chat_path(root: ChatHistory, path: Path) -> bool:
    return find_chat_item_by_path(root, path) is not None


def is_path_within(path: Path, ancestor: Path) -> bool:
    """Return *True* if *path* equals *ancestor* or lies below it."""
    return len(path) >= len(ancestor) and path[:len(ancestor)] == ancestor


# ---------------------------------------------------------------------------
# Renumbering
# ---------------------------------------------------------------------------

def renumber(folder: ChatFolder, start_index: int = 0) -> None:
    """Reassign ``path`` on the children of *folder* from *start_index* on.

    Descendants of renumbered sub-folders are corrected as well, so after
    the call ``folder.children[i].path == folder.path + [i]`` holds for the
    whole branch.
    """
    for i in range(start_index, len(folder.children)):
        child = folder.children[i]
        child.path = [*folder.path, i]
        if isinstance(child, ChatFolder):
            renumber(child)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def iter_chat_threads(folder: ChatFolder) -> Iterator[ChatThread]:
    """Yield every thread below *folder*, depth-first in child order."""
    for child in folder.children:
        if isinstance(child, ChatFolder):
            yield from iter_chat_threads(child)
        else:
            yield child


def iter_chat_items(folder: ChatFolder) -> Iterator[ChatItem]:
    """Yield every folder and thread below *folder*, depth-first."""
    for child in folder.children:
        yield child
        if isinstance(child, ChatFolder):
            yield from iter_chat_items(child)


def find_first_chat_thread(folder: ChatFolder) -> ChatThread | None:
    return next(iter_chat_threads(folder), None)


def has_at_least_n_chat_threads(folder: ChatFolder, n: int) -> bool:
    if n <= 0:
        return True
    for count, _ in enumerate(iter_chat_threads(folder), start=1):
        if count >= n:
            return True
    return False


def number_of_chat_threads(folder: ChatFolder) -> int:
    return sum(1 for _ in iter_chat_threads(folder))


def find_chat_path_by_id(root: ChatHistory, item_id: str) -> Path | None:
    for item in iter_chat_items(root):
        if item.id == item_id:
            return list(item.path)
    return None


def collect_ids(root: ChatHistory) -> set[str]:
    """Return the identifiers of *root* and every item below it."""
    ids = {root.id}
    ids.update(item.id for item in iter_chat_items(root))
    return ids


def find_first_available_title(parent: ChatFolder, prefix: str,
                               bare_first: bool = False) -> str:
    """Return a title starting with *prefix* unused by *parent*'s threads.

    Only sibling *threads* are considered; folder titles and the rest of
    the tree do not matter.  Candidates are ``"<prefix> 1"``,
    ``"<prefix> 2"``, ...  With *bare_first* the plain *prefix* is tried
    first and numbering then starts at 2.
    """
    existing = {
        child.title for child in parent.children
        if isinstance(child, ChatThread)
    }
    if bare_first and prefix not in existing:
        return prefix
    i = 2 if bare_first else 1
    title = f"{prefix} {i}"
    while title in existing:
        i += 1
        title = f"{prefix} {i}"
    return title


def find_first_available_folder_title(parent: ChatFolder, prefix: str) -> str:
    """Same as :func:`find_first_available_title` but scoped to folders."""
    existing = {
        child.title for child in parent.children
        if isinstance(child, ChatFolder)
    }
    i = 1
    while f"{prefix} {i}" in existing:
        i += 1
    return f"{prefix} {i}"


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

def filter_chat_items(
    folder: ChatFolder,
    predicate: Callable[[ChatThread], bool],
) -> list[ChatItem]:
    """Return the children of *folder* restricted to matching threads.

    Sub-folders are kept, as shallow copies holding only their surviving
    descendants, when at least one thread below them matches.  Folders
    with nothing left are dropped even if their own title would match.
    """
    result: list[ChatItem] = []
    for child in folder.children:
        if isinstance(child, ChatFolder):
            sub_items = filter_chat_items(child, predicate)
            if sub_items:
                result.append(replace(child, children=sub_items))
        elif predicate(child):
            result.append(child)
    return result

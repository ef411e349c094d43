"""
Chat history tree — command-line entry point.

Run with:
    python main.py tree
    python main.py new-chat --folder 0
    python main.py import export.json

Paths are written as dot-separated child indices (``0.2.1``); an empty
string addresses the root folder.
"""

import argparse
import logging
import os
import sys

# Require Python 3.10+ for the union-type hints used throughout the package.
if sys.version_info < (3, 10):
    sys.exit(
        "Python 3.10 or later is required.\n"
        f"You are running Python {sys.version_info.major}.{sys.version_info.minor}."
    )

from chat_history.history_api import ChatHistoryApi  # noqa: E402
from chat_history.legacy import (  # noqa: E402
    MalformedImportError,
    fetch_import,
    import_chats,
    import_chats_from_file,
    write_export,
)
from chat_history.models import ChatFolder, ChatItem  # noqa: E402
from chat_history.settings import load_settings  # noqa: E402
from chat_history.store import HistoryStore  # noqa: E402

log = logging.getLogger("chat_history")


def parse_path(text: str) -> list[int]:
    """Turn ``"0.2.1"`` into ``[0, 2, 1]`` (``""`` is the root)."""
    text = text.strip()
    if not text:
        return []
    try:
        return [int(part) for part in text.split(".")]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid path: {text!r}") from None


def format_path(path: list[int]) -> str:
    return ".".join(str(i) for i in path) or "(root)"


def _print_items(items: list[ChatItem], active: list[int],
                 depth: int = 0) -> None:
    for item in items:
        indent = "  " * depth
        if isinstance(item, ChatFolder):
            mark = "-" if item.expanded else "+"
            print(f"{indent}{mark} [{format_path(item.path)}] {item.title}/")
            _print_items(item.children, active, depth + 1)
        else:
            mark = "*" if item.path == active else " "
            print(f"{indent}{mark} [{format_path(item.path)}] {item.title}"
                  f"  ({len(item.messages)} msg)")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_tree(api: ChatHistoryApi, args) -> int:
    history, active = api.snapshot()
    _print_items(history.children, active)
    return 0


def cmd_new_chat(api: ChatHistoryApi, args) -> int:
    path = api.append_and_activate_new_chat_thread(args.folder)
    if path is None:
        print(f"Not a folder: {format_path(args.folder)}")
        return 1
    print(f"Created {format_path(path)}: {api.get_chat_thread_title(path)}")
    return 0


def cmd_new_folder(api: ChatHistoryApi, args) -> int:
    path = api.append_chat_folder(args.parent, args.title)
    if path is None:
        print(f"Not a folder: {format_path(args.parent)}")
        return 1
    print(f"Created folder {format_path(path)}")
    return 0


def cmd_delete(api: ChatHistoryApi, args) -> int:
    item = api.get_chat_item(args.path)
    if item is None or not args.path:
        print(f"Nothing to delete at {format_path(args.path)}")
        return 1
    if isinstance(item, ChatFolder):
        api.delete_chat_folder(args.path)
    else:
        api.delete_chat_thread(args.path, args.replace_if_empty)
    print(f"Deleted {item.title!r}")
    return 0


def cmd_move(api: ChatHistoryApi, args) -> int:
    item = api.get_chat_item(args.source)
    if isinstance(item, ChatFolder):
        new_path = api.move_chat_folder(args.source, args.dest, args.expand)
    else:
        new_path = api.move_chat_thread_to_folder(args.source, args.dest,
                                                  args.expand)
    if new_path is None:
        print(f"Cannot move {format_path(args.source)} into "
              f"{format_path(args.dest)}")
        return 1
    print(f"Moved to {format_path(new_path)}")
    return 0


def cmd_clone(api: ChatHistoryApi, args) -> int:
    path = api.clone_chat_thread(args.path) if args.path is not None \
        else api.clone_active_chat_thread()
    if path is None:
        print("No chat to clone.")
        return 1
    print(f"Cloned as {format_path(path)}: {api.get_chat_thread_title(path)}")
    return 0


def cmd_rename(api: ChatHistoryApi, args) -> int:
    item = api.get_chat_item(args.path)
    if isinstance(item, ChatFolder):
        changed = api.set_chat_folder_title(args.path, args.title)
    else:
        changed = api.set_chat_thread_title(args.path, args.title,
                                            title_set=True)
    print("Renamed." if changed else "Nothing changed.")
    return 0


def cmd_filter(api: ChatHistoryApi, args) -> int:
    items = api.filtered_chat_history_children_by_title(args.query,
                                                        args.keep_active)
    _print_items(items, api.active_chat_path)
    return 0


def cmd_import(api: ChatHistoryApi, args) -> int:
    source = args.source
    try:
        if source.startswith(("http://", "https://")):
            count = import_chats(api, fetch_import(source))
        else:
            count = import_chats_from_file(api, source)
    except MalformedImportError as exc:
        print(str(exc))
        return 1
    print(f"Successfully imported {count} item(s).")
    return 0


def cmd_export(api: ChatHistoryApi, args) -> int:
    write_export(api, args.file)
    print(f"Exported to {args.file}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage a folder tree of chat threads.",
    )
    parser.add_argument("--db", help="SQLite database file")
    parser.add_argument("--settings", help="settings JSON file")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="print debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("tree", help="print the chat tree")
    p.set_defaults(func=cmd_tree)

    p = sub.add_parser("new-chat", help="append a chat and select it")
    p.add_argument("--folder", type=parse_path, default=[])
    p.set_defaults(func=cmd_new_chat)

    p = sub.add_parser("new-folder", help="append a folder")
    p.add_argument("title", nargs="?")
    p.add_argument("--parent", type=parse_path, default=[])
    p.set_defaults(func=cmd_new_folder)

    p = sub.add_parser("delete", help="delete a chat or folder")
    p.add_argument("path", type=parse_path)
    p.add_argument("--replace-if-empty", action="store_true")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("move", help="move a chat or folder into a folder")
    p.add_argument("source", type=parse_path)
    p.add_argument("dest", type=parse_path)
    p.add_argument("--expand", action="store_true")
    p.set_defaults(func=cmd_move)

    p = sub.add_parser("clone", help="clone a chat (default: the active one)")
    p.add_argument("path", type=parse_path, nargs="?")
    p.set_defaults(func=cmd_clone)

    p = sub.add_parser("rename", help="rename a chat or folder")
    p.add_argument("path", type=parse_path)
    p.add_argument("title")
    p.set_defaults(func=cmd_rename)

    p = sub.add_parser("filter", help="list chats whose title matches")
    p.add_argument("query")
    p.add_argument("--keep-active", action="store_true")
    p.set_defaults(func=cmd_filter)

    p = sub.add_parser("import", help="import a JSON export (file or URL)")
    p.add_argument("source")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("export", help="write a version-2 JSON export")
    p.add_argument("file")
    p.set_defaults(func=cmd_export)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    settings = load_settings(args.settings)
    store = HistoryStore(args.db or os.environ.get("CHAT_HISTORY_DB"))
    try:
        api = store.load_api(settings)
        store.save(api)
        if settings.auto_save:
            store.attach(api)
        log.debug("[CLI] Running %s", args.command)
        result = args.func(api, args)
        if not settings.auto_save:
            store.save(api)
        return result
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())

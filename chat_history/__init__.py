"""
Chat history tree
=================

Conversations organised into an arbitrarily nested tree of folders and chat
threads.  Every item is addressed by its path (child indices from the root);
:class:`ChatHistoryApi` is the single writer that keeps those paths and the
active selection consistent across every change.
"""

__version__ = "0.1.0"

from .history_api import ChatHistoryApi
from .legacy import MalformedImportError, import_chats
from .models import ChatConfig, ChatFolder, ChatThread, Message

__all__ = [
    "ChatHistoryApi",
    "ChatConfig",
    "ChatFolder",
    "ChatThread",
    "Message",
    "MalformedImportError",
    "import_chats",
]

"""
Data model of the chat history tree.

The history is a tree of :class:`ChatFolder` and :class:`ChatThread` items
hanging off a distinguished root folder.  Every item is addressed by its
*path*: the list of child indices leading to it from the root (the root
itself has the empty path).  Paths are derived data; they are recomputed by
:func:`chat_history.tree.renumber` after every structural change and are
never set by hand.

The on-disk / wire representation is a plain dict per item.  A folder dict
has a ``children`` list; a thread dict has ``messages`` and ``titleSet``.
"""

import uuid
from dataclasses import asdict, dataclass, field, fields

#: Message roles understood by the completion endpoints.
VALID_ROLES: tuple[str, ...] = ("user", "assistant", "system")

Path = list[int]


def new_id() -> str:
    """Return a fresh, globally unique item identifier."""
    return str(uuid.uuid4())


@dataclass
class ChatConfig:
    """Generation parameters attached to every folder and thread."""

    model: str = "gpt-3.5-turbo"
    max_tokens: int = 4000
    temperature: float = 1
    presence_penalty: float = 0
    top_p: float = 1
    frequency_penalty: float = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ChatConfig":
        """Build a config from *data*, ignoring unknown keys."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Message:
    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(role=data["role"], content=data.get("content", ""))


@dataclass
class ChatThread:
    """A leaf of the tree holding one conversation."""

    id: str = field(default_factory=new_id)
    title: str = ""
    config: ChatConfig = field(default_factory=ChatConfig)
    path: Path = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    # True once the user (or auto-titling) picked the title explicitly.
    title_set: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "config": self.config.to_dict(),
            "path": list(self.path),
            "messages": [m.to_dict() for m in self.messages],
            "titleSet": self.title_set,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChatThread":
        return cls(
            id=data.get("id") or new_id(),
            title=data.get("title", ""),
            config=ChatConfig.from_dict(data.get("config")),
            path=list(data.get("path", [])),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            title_set=bool(data.get("titleSet", False)),
        )


@dataclass
class ChatFolder:
    """An ordered container of folders and threads."""

    id: str = field(default_factory=new_id)
    title: str = ""
    config: ChatConfig = field(default_factory=ChatConfig)
    path: Path = field(default_factory=list)
    children: list["ChatFolder | ChatThread"] = field(default_factory=list)
    expanded: bool = True
    color: str | None = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "config": self.config.to_dict(),
            "path": list(self.path),
            "children": [child.to_dict() for child in self.children],
            "expanded": self.expanded,
        }
        if self.color is not None:
            data["color"] = self.color
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ChatFolder":
        return cls(
            id=data.get("id") or new_id(),
            title=data.get("title", ""),
            config=ChatConfig.from_dict(data.get("config")),
            path=list(data.get("path", [])),
            children=[item_from_dict(c) for c in data.get("children", [])],
            expanded=bool(data.get("expanded", True)),
            color=data.get("color"),
        )


ChatItem = ChatFolder | ChatThread

# The root of the tree is an ordinary folder whose path is always empty.
ChatHistory = ChatFolder


def is_chat_folder(item: ChatItem | None) -> bool:
    """Return *True* if *item* is a folder (has children)."""
    return isinstance(item, ChatFolder)


def is_folder_dict(data: dict) -> bool:
    """Structural test on the serialized form: folders carry ``children``."""
    return isinstance(data, dict) and "children" in data


def item_from_dict(data: dict) -> ChatItem:
    """Deserialize a folder or a thread depending on its shape."""
    if is_folder_dict(data):
        return ChatFolder.from_dict(data)
    return ChatThread.from_dict(data)


def new_chat_history(config: ChatConfig | None = None) -> ChatHistory:
    """Return an empty root folder carrying *config* as tree-wide default."""
    return ChatFolder(title="", config=config or ChatConfig(), path=[])

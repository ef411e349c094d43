"""
Tree-wide defaults.

Settings are stored as a JSON object in ``Asset/settings.json`` inside the
project root::

    {
        "defaultChatConfig": {"model": "gpt-4", "max_tokens": 4000, ...},
        "defaultSystemMessage": "Be helpful.",
        "autoSave": true
    }

Legacy files that hold only a flat config dict (the generation parameters
at the top level) are upgraded transparently on load.
"""

import json
import logging
import os
from dataclasses import dataclass, field

from .models import ChatConfig
from .paths import asset_path

log = logging.getLogger("chat_history")

SETTINGS_FILE_NAME = "settings.json"


@dataclass
class Settings:
    """Defaults consumed by the tree when it creates folders and threads."""

    default_chat_config: ChatConfig = field(default_factory=ChatConfig)
    # Seeds the first message of every new thread when non-empty.
    default_system_message: str = ""
    auto_save: bool = True

    def to_dict(self) -> dict:
        return {
            "defaultChatConfig": self.default_chat_config.to_dict(),
            "defaultSystemMessage": self.default_system_message,
            "autoSave": self.auto_save,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        if "defaultChatConfig" not in data and "model" in data:
            # Legacy format: the config itself at the top level.
            return cls(default_chat_config=ChatConfig.from_dict(data))
        return cls(
            default_chat_config=ChatConfig.from_dict(
                data.get("defaultChatConfig"),
            ),
            default_system_message=data.get("defaultSystemMessage", ""),
            auto_save=bool(data.get("autoSave", True)),
        )


def load_settings(file_path: str | None = None) -> Settings:
    """Read settings from *file_path*, falling back to defaults."""
    file_path = file_path or asset_path(SETTINGS_FILE_NAME)
    if not os.path.exists(file_path):
        return Settings()
    try:
        with open(file_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (json.JSONDecodeError, OSError) as exc:
        log.warning("[SETTINGS] Could not read %s: %s", file_path, exc)
        return Settings()
    if not isinstance(data, dict):
        log.warning("[SETTINGS] Ignoring %s: expected a JSON object.",
                    file_path)
        return Settings()
    return Settings.from_dict(data)


def save_settings(settings: Settings, file_path: str | None = None) -> None:
    """Write *settings* to *file_path* as JSON."""
    file_path = file_path or asset_path(SETTINGS_FILE_NAME)
    with open(file_path, "w", encoding="utf-8") as fh:
        json.dump(settings.to_dict(), fh, ensure_ascii=False, indent=2)

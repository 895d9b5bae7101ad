"""Conversation persistence as one JSON file per conversation."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from code_ask.models.agent_schemas import ConversationLoadError, ConversationNotFoundError
from code_ask.models.schemas import Conversation, utcnow

logger = logging.getLogger(__name__)

CONVERSATIONS_DIR = "conversations"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class ConversationStore(Protocol):
    def save(self, conversation: Conversation) -> None: ...

    def load(self, conversation_id: str) -> Conversation: ...

    def list(self) -> list[Conversation]: ...

    def delete(self, conversation_id: str) -> None: ...


class JsonConversationStore:
    def __init__(self, data_dir: Path) -> None:
        self.directory = Path(data_dir) / CONVERSATIONS_DIR

    def _path(self, conversation_id: str) -> Path:
        if not _SAFE_ID.match(conversation_id):
            raise ConversationNotFoundError(conversation_id)
        return self.directory / f"{conversation_id}.json"

    def save(self, conversation: Conversation) -> None:
        """Write the conversation, stamping ``updated``."""
        conversation.updated = utcnow()
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(conversation.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(conversation.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)

    def load(self, conversation_id: str) -> Conversation:
        path = self._path(conversation_id)
        if not path.is_file():
            raise ConversationNotFoundError(conversation_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Conversation.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise ConversationLoadError(f"cannot read conversation {conversation_id}: {e}") from e

    def list(self) -> list[Conversation]:
        """All readable conversations, most recently updated first."""
        if not self.directory.is_dir():
            return []
        conversations = []
        for path in self.directory.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                conversations.append(Conversation.model_validate(data))
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning("Skipping unreadable conversation %s: %s", path.name, e)
        conversations.sort(key=lambda c: c.updated, reverse=True)
        return conversations

    def delete(self, conversation_id: str) -> None:
        path = self._path(conversation_id)
        if not path.is_file():
            raise ConversationNotFoundError(conversation_id)
        path.unlink()

    def latest(self) -> Conversation | None:
        conversations = self.list()
        return conversations[0] if conversations else None

"""Concrete implementations for conversation persistence.

Records keep the context blob gzip-compressed and base64-encoded, next to its
element count so listings never have to decompress anything. Records written
before compression existed carry the blob uncompressed under ``context``;
those still load.
"""

import base64
import binascii
import copy
import gzip
import json
import logging
import secrets
import time
import zlib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import AliasChoices, BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .config import CHATS_DIR, PREVIEW_CHARS
from .errors import PersistenceError, ValidationError
from .models import ChatMessage, Conversation, ConversationSummary
from .settings import atomic_write_json

logger = logging.getLogger(__name__)


class StoredConversation(BaseModel):
    """On-disk shape of a conversation record.

    Also accepts the camelCase keys written by the original editor extension.
    """

    id: str
    name: str = "Untitled"
    created_at: datetime = Field(validation_alias=AliasChoices("created_at", "createdAt"))
    updated_at: datetime = Field(validation_alias=AliasChoices("updated_at", "updatedAt"))
    messages: List[ChatMessage] = Field(default_factory=list)
    context_compressed: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("context_compressed", "ollamaContextCompressed"),
    )
    context: Optional[List[int]] = Field(
        default=None, validation_alias=AliasChoices("context", "ollamaContext")
    )
    context_size: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("context_size", "contextSize")
    )
    last_context_size: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("last_context_size", "lastContextSize")
    )
    model: Optional[str] = None


# --- Context codec ---
def compress_context(context: Sequence[int]) -> str:
    """gzip + base64 of the JSON-encoded context; empty context encodes to ``""``."""
    if not context:
        return ""
    raw = json.dumps(list(context), separators=(",", ":")).encode("utf-8")
    return base64.b64encode(gzip.compress(raw)).decode("ascii")


def decompress_context(encoded: str) -> List[int]:
    """Inverse of ``compress_context``. Undecodable input yields ``[]`` and is logged."""
    if not encoded:
        return []
    try:
        data = json.loads(gzip.decompress(base64.b64decode(encoded, validate=True)))
    except (binascii.Error, OSError, EOFError, zlib.error, ValueError) as e:
        logger.error("Failed to decompress context: %s", e)
        return []
    if not isinstance(data, list) or not all(isinstance(x, int) for x in data):
        logger.error("Decompressed context is not a list of integers")
        return []
    return data


# --- Record helpers ---
def to_record(conversation: Conversation) -> Dict[str, Any]:
    stored = StoredConversation(
        id=conversation.id,
        name=conversation.name,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        messages=conversation.messages,
        context_compressed=compress_context(conversation.context),
        context_size=len(conversation.context),
        last_context_size=conversation.last_context_size,
        model=conversation.model,
    )
    return stored.model_dump(mode="json", exclude={"context"})


def parse_record(data: Any) -> StoredConversation:
    try:
        return StoredConversation.model_validate(data)
    except PydanticValidationError as e:
        raise PersistenceError(f"Invalid conversation record: {e.errors()[0]['msg']}") from e


def from_record(stored: StoredConversation) -> Conversation:
    if stored.context_compressed:
        context = decompress_context(stored.context_compressed)
    elif stored.context:
        context = list(stored.context)
    else:
        context = []
    return Conversation(
        id=stored.id,
        name=stored.name,
        created_at=stored.created_at,
        updated_at=stored.updated_at,
        messages=stored.messages,
        context=context,
        model=stored.model,
        last_context_size=stored.last_context_size,
    )


def summarize_record(stored: StoredConversation) -> ConversationSummary:
    if stored.messages:
        content = stored.messages[-1].content
        preview = content[:PREVIEW_CHARS] + ("..." if len(content) > PREVIEW_CHARS else "")
    else:
        preview = "(empty)"

    context_size = stored.context_size
    if context_size is None:
        # Sizing a compressed blob would mean decompressing it.
        if stored.context_compressed:
            context_size = stored.last_context_size or 0
        else:
            context_size = len(stored.context or [])

    return ConversationSummary(
        id=stored.id,
        name=stored.name,
        created_at=stored.created_at,
        updated_at=stored.updated_at,
        message_count=len(stored.messages),
        preview=preview,
        context_size=context_size,
        last_context_size=stored.last_context_size or context_size,
    )


def _most_recent_first(summaries: List[ConversationSummary]) -> List[ConversationSummary]:
    def key(summary: ConversationSummary) -> datetime:
        updated = summary.updated_at
        return updated if updated.tzinfo else updated.replace(tzinfo=timezone.utc)

    return sorted(summaries, key=key, reverse=True)


class Store(ABC):
    """Interface for saving and loading conversation records."""

    @abstractmethod
    def load_conversation(self, convo_id: str) -> Optional[Conversation]:
        """Loads a conversation, or returns ``None`` if there is no such record."""
        pass

    @abstractmethod
    def save_conversation(self, conversation: Conversation) -> None:
        """Saves a conversation, replacing any record with the same id."""
        pass

    @abstractmethod
    def list_conversations(self) -> List[ConversationSummary]:
        """Summaries of every stored conversation, most recently updated first."""
        pass

    @abstractmethod
    def delete_conversation(self, convo_id: str) -> bool:
        """Deletes a conversation; returns whether a record existed."""
        pass

    def rename_conversation(self, convo_id: str, name: str) -> bool:
        conversation = self.load_conversation(convo_id)
        if conversation is None:
            return False
        conversation.name = name
        conversation.updated_at = datetime.now(timezone.utc)
        self.save_conversation(conversation)
        return True

    def get_next_conversation_id(self) -> str:
        """Generates a new, practically unique conversation ID."""
        return f"conv-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


class InMemory(Store):
    """Keeps serialized conversation records in a dictionary."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}

    def load_conversation(self, convo_id: str) -> Optional[Conversation]:
        record = self._records.get(convo_id)
        if record is None:
            return None
        return from_record(parse_record(copy.deepcopy(record)))

    def save_conversation(self, conversation: Conversation) -> None:
        self._records[conversation.id] = to_record(conversation)

    def list_conversations(self) -> List[ConversationSummary]:
        return _most_recent_first(
            [summarize_record(parse_record(r)) for r in self._records.values()]
        )

    def delete_conversation(self, convo_id: str) -> bool:
        return self._records.pop(convo_id, None) is not None


class File(Store):
    """Saves and loads conversations as one JSON file per conversation."""

    def __init__(self, directory: Union[str, Path] = CHATS_DIR):
        self.base_dir = Path(directory)
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create {self.base_dir}: {e}") from e

    @property
    def storage_path(self) -> Path:
        return self.base_dir

    def _path(self, convo_id: str) -> Path:
        if not convo_id or convo_id in (".", "..") or "/" in convo_id or "\\" in convo_id:
            raise ValidationError(f"Invalid conversation id: {convo_id!r}")
        return self.base_dir / f"{convo_id}.json"

    def _read(self, path: Path) -> StoredConversation:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read {path.name}: {e}") from e
        return parse_record(data)

    def load_conversation(self, convo_id: str) -> Optional[Conversation]:
        path = self._path(convo_id)
        if not path.exists():
            return None
        return from_record(self._read(path))

    def save_conversation(self, conversation: Conversation) -> None:
        path = self._path(conversation.id)
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(path, to_record(conversation))
        except OSError as e:
            raise PersistenceError(f"Cannot write {path.name}: {e}") from e
        logger.info("Conversation saved: %s", conversation.id)

    def list_conversations(self) -> List[ConversationSummary]:
        summaries = []
        for path in sorted(self.base_dir.glob("*.json")):
            try:
                summaries.append(summarize_record(self._read(path)))
            except PersistenceError as e:
                logger.warning("Skipping conversation file %s: %s", path.name, e)
        return _most_recent_first(summaries)

    def delete_conversation(self, convo_id: str) -> bool:
        path = self._path(convo_id)
        if not path.exists():
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(f"Cannot delete {path.name}: {e}") from e
        logger.info("Conversation deleted: %s", convo_id)
        return True

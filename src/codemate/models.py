"""
Defines the core Pydantic data models for the application.

These models serve as the formal, validated data contract between all other
pillars: the post-processing rules and profiles, the chat messages and
conversations, and the per-turn results produced by the chat session.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

# --- Constants ---
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"
Role = Literal[USER_ROLE, ASSISTANT_ROLE, SYSTEM_ROLE]

PATTERN_REPLACE = "pattern-replace"
ADD_PREFIX = "add-prefix"
ADD_SUFFIX = "add-suffix"
RULE_KINDS = (PATTERN_REPLACE, ADD_PREFIX, ADD_SUFFIX)
UNKNOWN_KIND = "unknown"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# --- Post-processing ---
class RuleBase(BaseModel):
    """Fields shared by every post-processing rule, regardless of kind."""

    id: str = Field(default_factory=_new_id)
    name: str
    description: Optional[str] = None
    enabled: bool = True
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class PatternReplaceRule(RuleBase):
    """Replaces every match of a regular expression with a template."""

    kind: Literal["pattern-replace"] = PATTERN_REPLACE
    pattern: str
    replacement: str = ""


class AddPrefixRule(RuleBase):
    kind: Literal["add-prefix"] = ADD_PREFIX
    prefix: str


class AddSuffixRule(RuleBase):
    kind: Literal["add-suffix"] = ADD_SUFFIX
    suffix: str


class UnknownRule(RuleBase):
    """A rule of a kind this version does not understand.

    Extra fields are kept so the record survives a load/flush cycle untouched.
    """

    model_config = ConfigDict(extra="allow")

    kind: str


def _rule_kind(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("kind")
    else:
        kind = getattr(value, "kind", None)
    return kind if kind in RULE_KINDS else UNKNOWN_KIND


Rule = Annotated[
    Union[
        Annotated[PatternReplaceRule, Tag(PATTERN_REPLACE)],
        Annotated[AddPrefixRule, Tag(ADD_PREFIX)],
        Annotated[AddSuffixRule, Tag(ADD_SUFFIX)],
        Annotated[UnknownRule, Tag(UNKNOWN_KIND)],
    ],
    Discriminator(_rule_kind),
]


class Profile(BaseModel):
    """An ordered, named list of rule references.

    Ids may repeat and may point at rules that no longer exist; both are
    resolved (or skipped) at execution time.
    """

    id: str = Field(default_factory=_new_id)
    name: str
    description: Optional[str] = None
    rule_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


# --- Chat ---
class ChatMessage(BaseModel):
    """Represents a single message within a conversation."""

    role: Role
    content: str
    token_count: Optional[int] = None
    duration_ms: Optional[int] = None


class Conversation(BaseModel):
    """Represents a complete chat conversation session.

    ``context`` is the inference server's opaque state blob. Nothing in this
    package interprets it; it is only threaded through requests and persisted.
    """

    id: str
    name: str = "Untitled"
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    messages: List[ChatMessage] = Field(default_factory=list)
    context: List[int] = Field(default_factory=list)
    model: Optional[str] = None
    last_context_size: Optional[int] = None


class ConversationSummary(BaseModel):
    """Listing entry for a stored conversation; never holds the context blob."""

    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    preview: str
    context_size: int = 0
    last_context_size: int = 0


# --- Streaming ---
class StreamChunk(BaseModel):
    """One increment from the inference server.

    Either field may be absent. A non-empty ``context`` replaces the session's
    context wholesale.
    """

    text: Optional[str] = None
    context: Optional[List[int]] = None
    done: bool = False


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class TurnStats(BaseModel):
    """Payload of the turn-complete event."""

    message_id: int
    outcome: TurnState
    duration_ms: int
    token_count: Optional[int] = None
    context_snapshot: Optional[List[int]] = None


class TurnResult(BaseModel):
    """What ``ChatSession.submit`` hands back for a finished turn."""

    content: str
    raw_content: str
    stats: TurnStats

    @property
    def outcome(self) -> TurnState:
        return self.stats.outcome


"""Concrete implementations for session event sinks.

The chat session reports everything a front end needs to render through one
of these. The core itself never renders anything.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Tuple

from .models import TurnStats


class Events(ABC):
    """Interface for receiving chat session events."""

    @abstractmethod
    def message_added(self, message_id: int, role: str, content: str) -> None:
        """A new message (possibly an empty streaming placeholder) was added."""
        pass

    @abstractmethod
    def message_updated(self, message_id: int, content: str, append: bool) -> None:
        """A message changed; ``append`` means ``content`` is a delta."""
        pass

    @abstractmethod
    def turn_complete(self, stats: TurnStats) -> None:
        """A turn finished, whatever its outcome. Emitted exactly once per turn."""
        pass

    @abstractmethod
    def context_info_changed(self, token_count: int, message_count: int) -> None:
        pass

    @abstractmethod
    def chat_cleared(self) -> None:
        pass


class NoEvents(Events):
    """Default sink that discards every event."""

    def message_added(self, message_id, role, content):
        pass

    def message_updated(self, message_id, content, append):
        pass

    def turn_complete(self, stats):
        pass

    def context_info_changed(self, token_count, message_count):
        pass

    def chat_cleared(self):
        pass


class Recorder(Events):
    """Keeps every event as a ``(name, payload)`` tuple, in arrival order."""

    def __init__(self):
        self.events: List[Tuple[str, Any]] = []

    def message_added(self, message_id, role, content):
        self.events.append(("message_added", (message_id, role, content)))

    def message_updated(self, message_id, content, append):
        self.events.append(("message_updated", (message_id, content, append)))

    def turn_complete(self, stats):
        self.events.append(("turn_complete", stats))

    def context_info_changed(self, token_count, message_count):
        self.events.append(("context_info_changed", (token_count, message_count)))

    def chat_cleared(self):
        self.events.append(("chat_cleared", None))

    def named(self, name: str) -> List[Any]:
        """Returns the payloads of every event called ``name``."""
        return [payload for event, payload in self.events if event == name]

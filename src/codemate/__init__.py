"""
The main entrypoint for the CodeMate package.

This module contains the CodeMate class, which wires the pillars together: the
inference server (``llm``), the conversation store (``store``), the settings
store (``settings``) and the event sink (``events``). Each pillar is an
abstract base class with concrete implementations in its own module.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from . import events, llm, rules, session, settings, store
from .config import (
    CHATS_DIR,
    SETTINGS_PATH,
    SUMMARIZE_PROMPT,
    SUMMARIZER_SYSTEM_PROMPT,
    ClientConfig,
)
from .errors import NotFoundError
from .models import ChatMessage, Conversation, ConversationSummary

__version__ = "0.1.0"

logger = logging.getLogger(__name__)
api_logger = logging.getLogger("codemate.api")


class CodeMate:
    """
    The central orchestrator of a CodeMate chat.

    Owns one rule store and one chat session, and exposes the command
    surface a front end drives: saving, loading, renaming, compressing and
    deleting conversations, and picking models.
    """

    def __init__(
        self,
        llm: Optional[llm.LLM] = None,
        store: Optional[store.Store] = None,
        settings: Optional[settings.Settings] = None,
        events: Optional[events.Events] = None,
        system_prompt: Optional[str] = None,
    ) -> None:
        """
        Initialize CodeMate with configurable pillars.

        Parameters
        ----------
        llm : llm.LLM, optional
            Inference server. Defaults to llm.Ollama() configured from the
            settings store and the environment.
        store : store.Store, optional
            Conversation persistence. Defaults to store.File() under the data
            directory.
        settings : settings.Settings, optional
            Flat key-value settings holding the rules, profiles and client
            options. Defaults to settings.JsonFile() at the settings path.
        events : events.Events, optional
            Receives chat session events. Defaults to events.NoEvents().
        system_prompt : str, optional
            System instructions for regular turns.

        Examples
        --------
        Offline usage:

        >>> app = CodeMate(llm=llm.Echo(), store=store.InMemory(),
        ...                settings=settings.InMemory())
        """
        llm_module = globals()["llm"]
        store_module = globals()["store"]
        settings_module = globals()["settings"]
        events_module = globals()["events"]

        self.settings = (
            settings if settings is not None else settings_module.JsonFile(SETTINGS_PATH)
        )
        self.llm = (
            llm
            if llm is not None
            else llm_module.Ollama(ClientConfig.from_settings(self.settings))
        )
        self.store = store if store is not None else store_module.File(CHATS_DIR)
        self.events = events if events is not None else events_module.NoEvents()

        self.rules = rules.RuleStore(self.settings)
        self.session = session.ChatSession(
            self.llm, rules=self.rules, events=self.events, system_prompt=system_prompt
        )
        self._current_id: Optional[str] = None

    @property
    def current_conversation_id(self) -> Optional[str]:
        """Id of the stored conversation the live session was saved to or loaded from."""
        return self._current_id

    # --- Live session ---
    def new_chat(self) -> None:
        self.session.clear()
        self._current_id = None

    def fork_conversation(
        self,
        context_snapshot: Optional[Sequence[int]],
        messages: Sequence[Union[ChatMessage, dict]],
    ) -> None:
        """Forks the live session; the fork is not attached to any stored record."""
        self.session.fork(context_snapshot, messages)
        self._current_id = None

    # --- Conversations ---
    def save_conversation(
        self, name: str, conversation_id: Optional[str] = None
    ) -> Conversation:
        """Saves the live history and context.

        Saves over ``conversation_id`` when given, else over the current
        conversation, else under a new id. Returns the stored conversation.
        """
        convo_id = (
            conversation_id or self._current_id or self.store.get_next_conversation_id()
        )
        now = datetime.now(timezone.utc)
        existing = self.store.load_conversation(convo_id)
        context = self.session.context

        conversation = Conversation(
            id=convo_id,
            name=(name or "").strip() or "Untitled",
            created_at=existing.created_at if existing else now,
            updated_at=now,
            messages=[
                ChatMessage(role=m.role, content=m.content) for m in self.session.history
            ],
            context=context,
            model=self.llm.model,
            last_context_size=len(context),
        )
        self.store.save_conversation(conversation)
        self._current_id = convo_id
        return conversation

    def load_conversation(self, convo_id: str) -> Conversation:
        """Loads a stored conversation and makes it the live session.

        Raises
        ------
        NotFoundError
            If there is no conversation with this id.
        """
        conversation = self.store.load_conversation(convo_id)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {convo_id}")
        self.session.restore(conversation)
        self._current_id = conversation.id
        return conversation

    def list_conversations(self) -> List[ConversationSummary]:
        return self.store.list_conversations()

    def delete_conversation(self, convo_id: str) -> bool:
        deleted = self.store.delete_conversation(convo_id)
        if deleted and self._current_id == convo_id:
            self._current_id = None
        return deleted

    def rename_conversation(self, convo_id: str, name: str) -> None:
        if not self.store.rename_conversation(convo_id, name):
            raise NotFoundError(f"Conversation not found: {convo_id}")
        logger.info("Conversation renamed: %s -> %r", convo_id, name)

    async def compress_conversation(self, convo_id: str) -> Optional[str]:
        """Compresses a stored conversation without touching the live session.

        The history is summarized by a fresh, context-free request and replaced
        by the same single summary message the live ``compress`` produces.
        Returns the summary, or ``None`` if the conversation has no messages.

        Raises
        ------
        NotFoundError
            If there is no conversation with this id.
        TransportError
            If the inference server fails; the record is left as it was.
        """
        conversation = self.store.load_conversation(convo_id)
        if conversation is None:
            raise NotFoundError(f"Conversation not found: {convo_id}")
        if not conversation.messages:
            logger.warning("No conversation to compress: %s", convo_id)
            return None

        original_count = len(conversation.messages)
        transcript = session.build_transcript(conversation.messages)
        api_logger.debug("COMPRESSING CONVERSATION %s\n%s", convo_id, transcript)

        response = await self.llm.generate(
            SUMMARIZE_PROMPT.format(transcript=transcript), system=SUMMARIZER_SYSTEM_PROMPT
        )
        summary = response.text or ""
        context = list(response.context or [])

        conversation.messages = [session.compressed_message(summary)]
        conversation.context = context
        conversation.last_context_size = len(context)
        conversation.updated_at = datetime.now(timezone.utc)
        self.store.save_conversation(conversation)

        api_logger.debug("Compressed summary:\n%s", summary)
        logger.info(
            "Compressed %d messages - context reduced to %d tokens",
            original_count,
            len(context),
        )
        return summary

    # --- Models and settings ---
    async def list_models(self) -> List[str]:
        return await self.llm.list_models()

    async def model_info(self, name: Optional[str] = None) -> Dict[str, Any]:
        return await self.llm.model_info(name)

    async def check_connection(self) -> bool:
        return await self.llm.check_connection()

    def select_model(self, name: str) -> None:
        """Switches the model for subsequent turns and remembers the choice."""
        self.settings.update({"model": name})
        self.llm.update_config(model=name)
        logger.info("Model changed to: %s", name)

    def update_settings(self, values: Dict[str, Any]) -> None:
        """Persists client settings (``ollama_url``, ``temperature``, ...) and applies them."""
        self.settings.update(values)
        self.reload_settings()
        logger.info("Settings updated: %s", ", ".join(sorted(values)))

    def reload_settings(self) -> None:
        """Re-reads rules, profiles and client options from the settings store."""
        self.rules.reload()
        self.llm.update_config(**ClientConfig.from_settings(self.settings).model_dump())

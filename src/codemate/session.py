"""The live chat session: one conversation, one turn in flight at a time."""

import asyncio
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence, Union

from .config import PREVIEW_CHARS, SUMMARIZE_PROMPT, SUMMARIZER_SYSTEM_PROMPT
from .errors import CancellationSignal, SessionBusyError, TransportError, ValidationError
from .events import Events, NoEvents
from .llm import LLM
from .models import (
    ASSISTANT_ROLE,
    SYSTEM_ROLE,
    USER_ROLE,
    ChatMessage,
    Conversation,
    StreamChunk,
    TurnResult,
    TurnState,
    TurnStats,
)
from .rules import RuleStore

logger = logging.getLogger(__name__)
api_logger = logging.getLogger("codemate.api")

STOPPED_MARKER = "\n\n⏹ [Stopped]"
ERROR_MARKER = "\n\n⚠️ Error: {error}"
COMPRESSING_NOTICE = "📦 Compressing conversation history..."

_IN_FLIGHT = (TurnState.SENDING, TurnState.STREAMING)
_END = object()


def build_transcript(messages: Iterable[ChatMessage], limit: int = PREVIEW_CHARS) -> str:
    """Role-tagged preview of every message, each capped at ``limit`` characters."""
    lines = []
    for message in messages:
        content = message.content[:limit]
        if len(message.content) > limit:
            content += "..."
        lines.append(f"{message.role.capitalize()}: {content}")
    return "\n".join(lines)


def compressed_message(summary: str) -> ChatMessage:
    """The single synthetic message that replaces a compressed history."""
    return ChatMessage(role=SYSTEM_ROLE, content=f"[Compressed: {summary}]")


async def _next_chunk(iterator: AsyncIterator[StreamChunk]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class ChatSession:
    """Drives conversational turns against an inference server.

    Holds the running history, the opaque context blob and the message-id
    counter. Each ``submit`` walks ``Idle -> Sending -> Streaming`` and ends in
    ``Completed``, ``Aborted`` or ``Failed``; whichever it is, exactly one
    turn-complete event is emitted so a front end never gets stuck mid-turn.

    Parameters
    ----------
    llm : LLM
        The inference server.
    rules : RuleStore, optional
        Source of the active post-processing profile. Without one, responses
        are kept as streamed.
    events : Events, optional
        Receives message and turn events. Defaults to ``NoEvents``.
    system_prompt : str, optional
        System instructions for regular turns; the server's default otherwise.
    """

    def __init__(
        self,
        llm: LLM,
        rules: Optional[RuleStore] = None,
        events: Optional[Events] = None,
        system_prompt: Optional[str] = None,
    ):
        self.llm = llm
        self.rules = rules
        self.events = events if events is not None else NoEvents()
        self.system_prompt = system_prompt
        self.state = TurnState.IDLE
        self._context: List[int] = []
        self._history: List[ChatMessage] = []
        self._message_id = 0
        self._cancel: Optional[asyncio.Event] = None

    @property
    def context(self) -> List[int]:
        return list(self._context)

    @property
    def history(self) -> List[ChatMessage]:
        return list(self._history)

    @property
    def busy(self) -> bool:
        return self._cancel is not None

    # --- Turns ---
    async def submit(self, text: str) -> TurnResult:
        """Runs one turn for ``text`` and returns its outcome.

        Completed and stopped turns return a ``TurnResult``. A transport
        failure is recorded in history and on the event surface, then
        re-raised as ``TransportError``.

        Raises
        ------
        SessionBusyError
            If another turn or a compression is in flight.
        ValidationError
            If ``text`` is blank.
        TransportError
            If the inference server fails.
        """
        if self.busy:
            raise SessionBusyError("A response is already being generated")
        if not text or not text.strip():
            raise ValidationError("Message is empty")

        self._cancel = asyncio.Event()
        self.state = TurnState.SENDING
        try:
            user_id = self._next_id()
            self._history.append(ChatMessage(role=USER_ROLE, content=text))
            self.events.message_added(user_id, USER_ROLE, text)
            api_logger.debug("USER MESSAGE #%d:\n%s", user_id, text)
            if self._context:
                api_logger.debug("Context tokens: %d", len(self._context))

            assistant_id = self._next_id()
            self.events.message_added(assistant_id, ASSISTANT_ROLE, "")
            api_logger.debug("ASSISTANT RESPONSE #%d", assistant_id)

            started = time.monotonic()
            parts: List[str] = []
            chunk_count = 0
            stream = self.llm.stream(
                text, system=self.system_prompt, context=self._context or None
            )
            try:
                async with aclosing(self._chunks(stream)) as chunks:
                    async for chunk in chunks:
                        if chunk.text:
                            parts.append(chunk.text)
                            chunk_count += 1
                            self.events.message_updated(assistant_id, chunk.text, append=True)
                        if chunk.context:
                            self._context = list(chunk.context)
            except CancellationSignal:
                return self._finish_interrupted(
                    assistant_id, "".join(parts), STOPPED_MARKER, TurnState.ABORTED, started
                )
            except asyncio.CancelledError:
                self._finish_interrupted(
                    assistant_id, "".join(parts), STOPPED_MARKER, TurnState.ABORTED, started
                )
                raise
            except TransportError as e:
                logger.error("Turn failed: %s", e)
                self._finish_interrupted(
                    assistant_id,
                    "".join(parts),
                    ERROR_MARKER.format(error=e),
                    TurnState.FAILED,
                    started,
                )
                raise
            except Exception as e:
                logger.exception("Turn failed unexpectedly")
                self._finish_interrupted(
                    assistant_id,
                    "".join(parts),
                    ERROR_MARKER.format(error=e),
                    TurnState.FAILED,
                    started,
                )
                raise TransportError(f"Unexpected stream error: {e}") from e

            return self._finish_completed(assistant_id, "".join(parts), chunk_count, started)
        finally:
            self._cancel = None

    def _finish_completed(
        self, message_id: int, raw: str, chunk_count: int, started: float
    ) -> TurnResult:
        duration_ms = _elapsed_ms(started)
        content = self.rules.process(raw) if self.rules is not None else raw
        self._history.append(
            ChatMessage(
                role=ASSISTANT_ROLE,
                content=content,
                token_count=chunk_count,
                duration_ms=duration_ms,
            )
        )
        if content != raw:
            self.events.message_updated(message_id, content, append=False)

        self.state = TurnState.COMPLETED
        api_logger.debug("RESPONSE COMPLETE (%d chunks)", chunk_count)
        logger.info(
            "Turn #%d complete: %d chunks in %d ms, %d context tokens",
            message_id,
            chunk_count,
            duration_ms,
            len(self._context),
        )
        self._emit_context_info()
        stats = TurnStats(
            message_id=message_id,
            outcome=TurnState.COMPLETED,
            duration_ms=duration_ms,
            token_count=chunk_count,
            context_snapshot=list(self._context),
        )
        self.events.turn_complete(stats)
        return TurnResult(content=content, raw_content=raw, stats=stats)

    def _finish_interrupted(
        self, message_id: int, raw: str, marker: str, outcome: TurnState, started: float
    ) -> TurnResult:
        duration_ms = _elapsed_ms(started)
        content = raw + marker
        self._history.append(
            ChatMessage(role=ASSISTANT_ROLE, content=content, duration_ms=duration_ms)
        )
        self.events.message_updated(message_id, marker, append=True)

        self.state = outcome
        api_logger.debug("STREAM %s after %d ms", outcome.value.upper(), duration_ms)
        stats = TurnStats(message_id=message_id, outcome=outcome, duration_ms=duration_ms)
        self.events.turn_complete(stats)
        return TurnResult(content=content, raw_content=raw, stats=stats)

    async def _chunks(self, stream: AsyncIterator[StreamChunk]) -> AsyncIterator[StreamChunk]:
        """Yields from ``stream`` until it ends, racing each chunk against ``stop()``.

        Raises ``CancellationSignal`` as soon as the stop event fires, even while
        a chunk is still pending. The provider stream is always closed on exit.
        """
        iterator = stream.__aiter__()
        stopped = asyncio.ensure_future(self._cancel.wait())
        pending: Optional[asyncio.Future] = None
        try:
            while True:
                pending = asyncio.ensure_future(_next_chunk(iterator))
                done, _ = await asyncio.wait(
                    {pending, stopped}, return_when=asyncio.FIRST_COMPLETED
                )
                if pending not in done or self._cancel.is_set():
                    raise CancellationSignal()

                chunk = pending.result()
                pending = None
                if chunk is _END:
                    return
                if self.state == TurnState.SENDING:
                    self.state = TurnState.STREAMING
                yield chunk
                if self._cancel.is_set():
                    raise CancellationSignal()
        finally:
            stopped.cancel()
            if pending is not None and not pending.done():
                pending.cancel()
                await asyncio.wait({pending})
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    def stop(self) -> bool:
        """Asks the in-flight turn or compression to stop.

        Returns whether there was anything to stop; calling it again, or with
        nothing in flight, does nothing.
        """
        if self._cancel is None or self._cancel.is_set():
            return False
        self._cancel.set()
        self.state = TurnState.ABORTED
        logger.info("Generation stopped by user")
        return True

    # --- Whole-session operations ---
    def clear(self) -> None:
        """Resets history, context and the message counter."""
        if self.busy:
            raise SessionBusyError("Cannot clear while a response is being generated")
        self._context = []
        self._history = []
        self._message_id = 0
        self.state = TurnState.IDLE
        logger.info("Context cleared")
        self.events.chat_cleared()
        self._emit_context_info()

    async def compress(self) -> Optional[str]:
        """Replaces the whole history with one summary message.

        The summary comes from a fresh, context-free request; the context it
        returns becomes the session context. Stopping or failing leaves the
        session untouched. Returns the summary, or ``None`` when there was
        nothing to compress or the compression was stopped.
        """
        if self.busy:
            raise SessionBusyError("A response is already being generated")
        if not self._history:
            logger.warning("No conversation to compress")
            return None

        original_count = len(self._history)
        transcript = build_transcript(self._history)
        api_logger.debug("COMPRESSING CONTEXT\nCurrent conversation:\n%s", transcript)

        self._cancel = asyncio.Event()
        self.state = TurnState.SENDING
        notice_id = self._next_id()
        self.events.message_added(notice_id, SYSTEM_ROLE, COMPRESSING_NOTICE)

        parts: List[str] = []
        new_context: List[int] = []
        stream = self.llm.stream(
            SUMMARIZE_PROMPT.format(transcript=transcript), system=SUMMARIZER_SYSTEM_PROMPT
        )
        try:
            async with aclosing(self._chunks(stream)) as chunks:
                async for chunk in chunks:
                    if chunk.text:
                        parts.append(chunk.text)
                    if chunk.context:
                        new_context = list(chunk.context)
        except (CancellationSignal, asyncio.CancelledError) as e:
            self.state = TurnState.ABORTED
            self.events.message_updated(notice_id, "⏹ Compression stopped", append=False)
            if isinstance(e, asyncio.CancelledError):
                raise
            return None
        except TransportError as e:
            self.state = TurnState.FAILED
            logger.error("Compression failed: %s", e)
            self.events.message_updated(notice_id, f"❌ Compression failed: {e}", append=False)
            raise
        except Exception as e:
            self.state = TurnState.FAILED
            logger.exception("Compression failed unexpectedly")
            self.events.message_updated(notice_id, f"❌ Compression failed: {e}", append=False)
            raise TransportError(f"Unexpected stream error: {e}") from e
        finally:
            self._cancel = None

        summary = "".join(parts)
        self._history = [compressed_message(summary)]
        self._context = new_context
        self.state = TurnState.COMPLETED
        self.events.message_updated(
            notice_id, f"✅ Context compressed:\n\n{summary}", append=False
        )
        logger.info(
            "Compressed %d messages into summary, %d context tokens",
            original_count,
            len(new_context),
        )
        self._emit_context_info()
        return summary

    def fork(
        self,
        context_snapshot: Optional[Sequence[int]],
        messages: Sequence[Union[ChatMessage, dict]],
    ) -> None:
        """Starts over from a snapshot taken at the end of an earlier turn.

        ``messages`` are trusted as given; only their role and content are kept.
        Persisted conversations are not touched.
        """
        if self.busy:
            raise SessionBusyError("Cannot fork while a response is being generated")
        self._context = list(context_snapshot or [])
        self._history = [_role_and_content(m) for m in messages]
        self._message_id = 0
        self.state = TurnState.IDLE

        self.events.chat_cleared()
        for message in self._history:
            self.events.message_added(self._next_id(), message.role, message.content)
        self._emit_context_info()
        logger.info(
            "Forked conversation with %d context tokens and %d messages",
            len(self._context),
            len(self._history),
        )

    def restore(self, conversation: Conversation) -> None:
        """Adopts a loaded conversation's history and context as the live state."""
        if self.busy:
            raise SessionBusyError("Cannot restore while a response is being generated")
        self._context = list(conversation.context)
        self._history = [m.model_copy() for m in conversation.messages]
        self._message_id = len(self._history)
        self.state = TurnState.IDLE
        self._emit_context_info()
        logger.info(
            "Restored conversation %s with %d context tokens",
            conversation.id,
            len(self._context),
        )

    # --- Helpers ---
    def _next_id(self) -> int:
        self._message_id += 1
        return self._message_id

    def _emit_context_info(self) -> None:
        self.events.context_info_changed(len(self._context), len(self._history))


def _role_and_content(message: Union[ChatMessage, dict]) -> ChatMessage:
    if isinstance(message, ChatMessage):
        role, content = message.role, message.content
    else:
        role, content = message["role"], message["content"]
    return ChatMessage.model_construct(role=role, content=content)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

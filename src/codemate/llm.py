"""Concrete implementations for inference servers."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx
from ollama import AsyncClient, RequestError, ResponseError

from .config import (
    DEFAULT_SYSTEM_PROMPT,
    GENERATE_TIMEOUT,
    LOOKUP_TIMEOUT,
    ClientConfig,
)
from .errors import TransportError
from .models import StreamChunk

api_logger = logging.getLogger("codemate.api")

_TRANSPORT_ERRORS = (ResponseError, RequestError, httpx.HTTPError, ConnectionError)


class LLM(ABC):
    """Abstract Base Class for all inference servers."""

    @abstractmethod
    def stream(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        context: Optional[Sequence[int]] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Streams a completion for ``prompt``.

        Parameters
        ----------
        prompt : str
            The user prompt for this turn.
        system : str, optional
            System instructions. Providers fall back to their default prompt.
        context : Sequence[int], optional
            The opaque context returned by a previous turn. Empty or ``None``
            starts a fresh conversation.

        Returns
        -------
        AsyncIterator[StreamChunk]
            Chunks carrying text deltas and/or a replacement context. The
            final chunk carries the authoritative context. Closing the
            iterator early aborts the underlying request.

        Raises
        ------
        TransportError
            If the server is unreachable or answers with an error.
        """
        pass

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        context: Optional[Sequence[int]] = None,
    ) -> StreamChunk:
        """Non-streaming variant of ``stream``; returns one complete chunk."""
        pass

    @abstractmethod
    async def list_models(self) -> List[str]:
        pass

    @abstractmethod
    async def model_info(self, name: Optional[str] = None) -> Dict[str, Any]:
        """Returns the server's metadata for ``name`` (default: the current model)."""
        pass

    @property
    @abstractmethod
    def model(self) -> str:
        pass

    @abstractmethod
    def update_config(self, **changes: Any) -> None:
        pass

    async def check_connection(self) -> bool:
        try:
            await self.list_models()
        except TransportError:
            return False
        return True


class Ollama(LLM):
    """Talks to an Ollama server through the official async client.

    Three clients share one configuration: the streaming client has no
    timeout, ``generate`` gets a longer one, and lookups a short one.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        lookup_timeout: float = LOOKUP_TIMEOUT,
        generate_timeout: float = GENERATE_TIMEOUT,
    ):
        self.config = config or ClientConfig()
        self.lookup_timeout = lookup_timeout
        self.generate_timeout = generate_timeout
        self._connect()

    def _connect(self) -> None:
        self.client = AsyncClient(host=self.config.url)
        self.generate_client = AsyncClient(host=self.config.url, timeout=self.generate_timeout)
        self.lookup_client = AsyncClient(host=self.config.url, timeout=self.lookup_timeout)

    @property
    def model(self) -> str:
        return self.config.model

    def update_config(self, **changes: Any) -> None:
        previous_url = self.config.url
        self.config = self.config.model_copy(update=changes)
        if self.config.url != previous_url:
            self._connect()

    def _request(
        self, prompt: str, system: Optional[str], context: Optional[Sequence[int]]
    ) -> Dict[str, Any]:
        request = {
            "model": self.config.model,
            "prompt": prompt,
            "system": system or DEFAULT_SYSTEM_PROMPT,
            "options": {
                "temperature": self.config.temperature,
                "num_ctx": self.config.context_size,
            },
        }
        if context:
            request["context"] = list(context)
        return request

    def _log_request(self, request: Dict[str, Any]) -> None:
        api_logger.debug("REQUEST URL: POST %s/api/generate", self.config.url)
        api_logger.debug(
            "REQUEST: model=%s options=%s context_tokens=%d prompt=%r",
            request["model"],
            request["options"],
            len(request.get("context", ())),
            request["prompt"][:200],
        )

    async def stream(self, prompt, *, system=None, context=None):
        request = self._request(prompt, system, context)
        self._log_request(request)
        response = None
        try:
            response = await self.client.generate(stream=True, **request)
            async for part in response:
                api_logger.debug(
                    "CHUNK: done=%s response=%r context_tokens=%s",
                    part.done,
                    part.response,
                    len(part.context) if part.context else None,
                )
                yield StreamChunk(
                    text=part.response or None,
                    context=list(part.context) if part.context else None,
                    done=bool(part.done),
                )
        except _TRANSPORT_ERRORS as e:
            api_logger.debug("ERROR: %s", e)
            raise TransportError(f"Ollama API error: {e}") from e
        finally:
            # Closing the response aborts the HTTP request when the caller stops early.
            aclose = getattr(response, "aclose", None)
            if aclose is not None:
                await aclose()
        api_logger.debug("STREAM COMPLETE")

    async def generate(self, prompt, *, system=None, context=None):
        request = self._request(prompt, system, context)
        self._log_request(request)
        try:
            response = await self.generate_client.generate(stream=False, **request)
        except _TRANSPORT_ERRORS as e:
            api_logger.debug("ERROR: %s", e)
            raise TransportError(f"Ollama API error: {e}") from e
        return StreamChunk(
            text=response.response or "",
            context=list(response.context) if response.context else None,
            done=True,
        )

    async def list_models(self) -> List[str]:
        try:
            response = await self.lookup_client.list()
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"Failed to list models: {e}") from e
        return [m.model for m in response.models if m.model]

    async def model_info(self, name=None):
        model = name or self.config.model
        try:
            response = await self.lookup_client.show(model)
        except _TRANSPORT_ERRORS as e:
            api_logger.debug("Failed to get model info for %s: %s", model, e)
            raise TransportError(f"Failed to get model info for {model}: {e}") from e
        info = response.model_dump(exclude_none=True)
        info["name"] = model
        return info


class Echo(LLM):
    """Offline server that streams the prompt back, one word per chunk."""

    def __init__(self, default_model: str = "echo-v1", delay: float = 0.0):
        self._model = default_model
        self.delay = delay

    @property
    def model(self) -> str:
        return self._model

    def update_config(self, **changes: Any) -> None:
        if changes.get("model"):
            self._model = changes["model"]

    def _reply(self, prompt: str) -> str:
        return f"Echo: {prompt}" if prompt else "Echo: (empty prompt)"

    async def stream(self, prompt, *, system=None, context=None):
        words = self._reply(prompt).split(" ")
        for i, word in enumerate(words):
            await asyncio.sleep(self.delay)
            yield StreamChunk(text=word if i == 0 else f" {word}")
        new_context = list(context or [])
        new_context.extend(range(len(new_context), len(new_context) + len(words)))
        yield StreamChunk(context=new_context, done=True)

    async def generate(self, prompt, *, system=None, context=None):
        text = ""
        last_context = None
        async for chunk in self.stream(prompt, system=system, context=context):
            text += chunk.text or ""
            last_context = chunk.context or last_context
        return StreamChunk(text=text, context=last_context, done=True)

    async def list_models(self) -> List[str]:
        return [self._model]

    async def model_info(self, name=None):
        return {"name": name or self._model, "details": {"family": "echo"}}

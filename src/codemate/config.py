"""Central configuration for paths, defaults and client settings."""

import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

if TYPE_CHECKING:
    from .settings import Settings


def _default_base_dir() -> Path:
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))
    return Path.home()


# Data directory; override with CODEMATE_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("CODEMATE_DATA_DIR", str(_default_base_dir() / ".codemate"))
)
CHATS_DIR = DATA_DIR / "chats"
SETTINGS_PATH = DATA_DIR / "settings.json"

# Inference server defaults
DEFAULT_URL = "http://localhost:11434"
DEFAULT_MODEL = "mistral"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_CONTEXT_SIZE = 4096
MAX_CONTEXT_SIZE = 131072

# Seconds; streaming calls carry no timeout
LOOKUP_TIMEOUT = 5.0
GENERATE_TIMEOUT = 30.0

# Characters of each message kept in previews and summarization prompts
PREVIEW_CHARS = 100

DEFAULT_SYSTEM_PROMPT = (
    "You are an intelligent code assistant. "
    "Help the user with code-related questions and tasks."
)
SUMMARIZER_SYSTEM_PROMPT = (
    "You are a conversation summarizer. Create a brief, concise summary "
    "of the conversation in 2-3 sentences."
)
SUMMARIZE_PROMPT = "Summarize this conversation concisely in 2-3 sentences:\n\n{transcript}"


class ClientConfig(BaseModel):
    """Connection and sampling settings for the inference server."""

    url: str = DEFAULT_URL
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    context_size: int = DEFAULT_CONTEXT_SIZE

    @field_validator("context_size")
    @classmethod
    def _cap_context_size(cls, value: int) -> int:
        return min(value, MAX_CONTEXT_SIZE)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ClientConfig":
        """Build from the settings store, then apply environment overrides."""
        temperature = settings.get("temperature")
        try:
            config = cls(
                url=settings.get("ollama_url") or DEFAULT_URL,
                model=settings.get("model") or DEFAULT_MODEL,
                temperature=DEFAULT_TEMPERATURE if temperature is None else temperature,
                context_size=settings.get("context_size") or DEFAULT_CONTEXT_SIZE,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid client settings: {e}") from e
        if os.environ.get("CODEMATE_OLLAMA_URL"):
            config.url = os.environ["CODEMATE_OLLAMA_URL"]
        if os.environ.get("CODEMATE_MODEL"):
            config.model = os.environ["CODEMATE_MODEL"]
        return config

"""Concrete implementations for the flat key-value settings store."""

import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .errors import PersistenceError

logger = logging.getLogger(__name__)


class Settings(ABC):
    """Interface for the user-level settings the core reads and writes."""

    @abstractmethod
    def read(self) -> Dict[str, Any]:
        """Returns a snapshot of every stored value."""
        pass

    @abstractmethod
    def update(self, values: Dict[str, Any]) -> None:
        """Overwrites ``values`` in one step; other keys are left alone.

        Either every value is written or none is. Raises ``PersistenceError``
        when the backing store cannot be written.
        """
        pass

    def get(self, key: str, default: Any = None) -> Any:
        return self.read().get(key, default)


class InMemory(Settings):
    """Keeps settings in a dictionary for the life of the process."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = copy.deepcopy(initial or {})

    def read(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)

    def update(self, values: Dict[str, Any]) -> None:
        self._values.update(copy.deepcopy(values))


class JsonFile(Settings):
    """Stores settings as a single JSON object on disk.

    The file is re-read on every ``read`` so out-of-band edits are picked up,
    and replaced atomically on every ``update``.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read settings from {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Settings file {self.path} does not hold an object")
        return data

    def update(self, values: Dict[str, Any]) -> None:
        data = self.read()
        data.update(values)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self.path, data)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot write settings to {self.path}: {e}") from e
        logger.debug("Wrote settings keys %s to %s", sorted(values), self.path)


def atomic_write_json(path: Path, data: Any) -> None:
    """Writes JSON to a temp file in the target directory, then renames it over ``path``."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

"""
Knowledge Stores

Persistence for connector collections. A store only loads and saves whole
collections; the connector owns ordering, validation and embeddings.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Protocol, Union, runtime_checkable

from pydantic import ValidationError

from ..common.errors import PersistenceError
from ..common.schemas import KnowledgeItem

logger = logging.getLogger("opsdesk.retriever.stores")


@runtime_checkable
class KnowledgeStore(Protocol):
    """Whole-collection persistence used by a connector"""

    def load(self) -> List[KnowledgeItem]:
        ...

    def save(self, items: List[KnowledgeItem]) -> None:
        ...


def atomic_write_json(path: Path, data) -> None:
    """Write JSON through a temp file in the same directory, then rename"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class JsonFileStore:
    """
    Collection persisted as a JSON list of items, embeddings included.

    Missing file means an empty collection. A corrupt file is an error,
    never silently treated as empty, so a later save cannot wipe it.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> List[KnowledgeItem]:
        if not self._path.exists():
            logger.info("No collection file at %s, starting empty", self._path)
            return []

        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise PersistenceError(f"{self._path} does not contain a JSON list")
            return [KnowledgeItem.model_validate(entry) for entry in data]
        except (json.JSONDecodeError, OSError, ValidationError) as e:
            raise PersistenceError(f"Failed to load {self._path}: {e}") from e

    def save(self, items: List[KnowledgeItem]) -> None:
        data = [item.model_dump(mode="json") for item in items]
        try:
            atomic_write_json(self._path, data)
        except OSError as e:
            raise PersistenceError(f"Failed to save {self._path}: {e}") from e
        logger.debug("Saved %d items to %s", len(items), self._path)


class InMemoryStore:
    """Store for tests and ephemeral sources"""

    def __init__(self, items: List[KnowledgeItem] = None):
        self._items: List[KnowledgeItem] = list(items or [])
        self.save_count = 0

    def load(self) -> List[KnowledgeItem]:
        return [item.model_copy(deep=True) for item in self._items]

    def save(self, items: List[KnowledgeItem]) -> None:
        self._items = [item.model_copy(deep=True) for item in items]
        self.save_count += 1

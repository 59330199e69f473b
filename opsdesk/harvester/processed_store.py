"""
Processed Store

Harvest state on disk:
- processed_<name>.json: flat JSON list of processed candidate keys, in order
- watermark_<name>.json: newest candidate timestamp already harvested

Both files are written atomically.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from ..common.config import HARVEST_STATE_DIR
from ..common.errors import PersistenceError
from ..retriever.stores import atomic_write_json

logger = logging.getLogger("opsdesk.harvester.processed_store")


class ProcessedStore:
    """Processed-id set and watermark for one fact source"""

    def __init__(self, state_dir: Union[str, Path, None] = None, name: str = "jira"):
        self._dir = Path(state_dir) if state_dir else HARVEST_STATE_DIR
        self._processed_path = self._dir / f"processed_{name}.json"
        self._watermark_path = self._dir / f"watermark_{name}.json"

    @property
    def processed_path(self) -> Path:
        return self._processed_path

    @property
    def watermark_path(self) -> Path:
        return self._watermark_path

    def load_processed(self) -> List[str]:
        """
        Processed keys in insertion order.

        Raises:
            PersistenceError: file exists but cannot be read
        """
        if not self._processed_path.exists():
            return []
        try:
            with open(self._processed_path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise PersistenceError(f"Failed to load {self._processed_path}: {e}") from e
        if not isinstance(data, list):
            raise PersistenceError(f"{self._processed_path} does not contain a JSON list")
        return list(dict.fromkeys(str(k) for k in data))

    def save_processed(self, keys: List[str]) -> None:
        try:
            atomic_write_json(self._processed_path, list(dict.fromkeys(keys)))
        except OSError as e:
            raise PersistenceError(f"Failed to save {self._processed_path}: {e}") from e

    def load_watermark(self) -> Optional[datetime]:
        if not self._watermark_path.exists():
            return None
        try:
            with open(self._watermark_path, encoding="utf-8") as f:
                data = json.load(f)
            value = data.get("watermark")
            return datetime.fromisoformat(value) if value else None
        except (json.JSONDecodeError, OSError, AttributeError, ValueError) as e:
            logger.warning("Ignoring unreadable watermark %s: %s", self._watermark_path, e)
            return None

    def save_watermark(self, watermark: datetime) -> None:
        data = {
            "watermark": watermark.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            atomic_write_json(self._watermark_path, data)
        except OSError as e:
            raise PersistenceError(f"Failed to save {self._watermark_path}: {e}") from e

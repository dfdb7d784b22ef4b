"""
Durable local snapshot storage.

One JSON file per storage key under CACHE_DIR. Reads are synchronous so the
service has content before its first network round trip; writes go to a
temporary file in the same directory which is then os.replace()d over the
target, so readers only ever see a complete old or a complete new snapshot.
"""

import json
import logging
import os
import tempfile
from typing import Optional, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class SnapshotStore:
    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def path_for(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def load(self, key: str, model: type[M]) -> Optional[M]:
        """Return the stored snapshot, or None if missing or unreadable."""
        path = self.path_for(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return model.model_validate_json(f.read())
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable snapshot {path}: {e}")
            return None

    def save(self, key: str, snapshot: BaseModel) -> None:
        self._write(key, snapshot.model_dump_json(by_alias=True))

    def load_raw(self, key: str) -> Optional[dict]:
        path = self.path_for(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable snapshot {path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def save_raw(self, key: str, data: dict) -> None:
        self._write(key, json.dumps(data))

    def _write(self, key: str, payload: str) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.path_for(key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

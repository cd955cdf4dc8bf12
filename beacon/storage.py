"""Key -> JSON blob store backing the queues and the device id.

Each key lives in its own file, ``__<key>.json``, holding ``{key: value}``.
Writes are synchronous and best-effort: a failed write is logged and the
in-memory copy stays authoritative for the rest of the process. Each blob
is written to a temp file and moved into place, so a failed write leaves
the previous contents on disk.
"""
from __future__ import annotations

import json
import logging
import os
import random
import time

logger = logging.getLogger(__name__)

QUEUE_KEY = "beacon_queue"
EVENT_KEY = "beacon_event"
ID_KEY = "beacon_id"


class JsonStore:
    """Cached blob store. With persist=False nothing touches the disk."""

    def __init__(self, storage_path: str, persist: bool = True) -> None:
        self.storage_path = os.path.abspath(storage_path)
        self.persist = persist
        self._data: dict = {}
        if persist:
            try:
                os.makedirs(self.storage_path, exist_ok=True)
            except OSError as e:
                logger.warning("Could not create storage dir %s: %s", self.storage_path, e)

    def path_for(self, key: str) -> str:
        return os.path.join(self.storage_path, f"__{key}.json")

    def get(self, key: str, default=None):
        if key not in self._data:
            blob = self._read(key)
            if isinstance(blob, dict) and key in blob:
                self._data[key] = blob[key]
            else:
                self._data[key] = default
        return self._data[key]

    def set(self, key: str, value) -> None:
        self._data[key] = value
        self._write(key, value)

    def force_store(self) -> None:
        """Rewrite every cached key, used right before the process dies."""
        for key, value in list(self._data.items()):
            self._write(key, value)

    def _write(self, key: str, value) -> None:
        if not self.persist:
            return
        try:
            blob = json.dumps({key: value})
        except (TypeError, ValueError) as e:
            logger.warning("Failed to store %s: %s", key, e)
            return
        path = self.path_for(key)
        tmp = f"{path}.tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(blob)
            os.replace(tmp, path)
        except OSError as e:
            logger.warning("Failed to store %s: %s", key, e)

    def _read(self, key: str):
        if not self.persist:
            return None
        path = self.path_for(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = f.read()
        except OSError:
            # no file yet, fresh install
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Corrupted store file %s: %s", path, e)
            self._backup(key, raw)
            return None

    def _backup(self, key: str, raw: str) -> None:
        suffix = f"{int(time.time())}{random.random()}"
        backup = os.path.join(self.storage_path, f"__{key}.{suffix}.json")
        try:
            with open(backup, "w", encoding="utf-8") as f:
                f.write(raw)
        except OSError as e:
            logger.debug("Failed to back up %s: %s", backup, e)

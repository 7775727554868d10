"""File-based storage for the moderation queue.

Storage path: ``<home>/moderation/queue.json`` -- a list of item dicts.
"""

from __future__ import annotations

import threading
from typing import Optional

from anontrust.config import Settings
from anontrust.errors import NotFound, StorageUnavailable
from anontrust.moderation.models import ModerationItem, ModerationStatus, Priority
from anontrust.storage import ensure_dir, read_json, write_json


class ModerationStore:
    """Snapshot reads and whole-item writes of the moderation queue."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or Settings()
        self._base = ensure_dir(self._settings.path("moderation"))
        self._queue_path = self._base / "queue.json"
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=self._settings.io_timeout):
            raise StorageUnavailable("Timed out waiting for the moderation queue")

    def _read(self) -> list[dict]:
        data = read_json(self._queue_path, default=[])
        if not isinstance(data, list):
            raise StorageUnavailable("queue.json does not hold a list")
        return data

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def list_items(
        self,
        status: Optional[ModerationStatus | str] = None,
        priority: Optional[Priority | str] = None,
    ) -> list[ModerationItem]:
        """Return a snapshot of the queue, optionally filtered."""
        self._acquire()
        try:
            items = [ModerationItem.from_dict(d) for d in self._read()]
        finally:
            self._lock.release()
        if status:
            wanted_status = ModerationStatus(status)
            items = [i for i in items if i.status == wanted_status]
        if priority:
            wanted_priority = Priority(priority)
            items = [i for i in items if i.priority == wanted_priority]
        return items

    def get(self, item_id: str) -> ModerationItem:
        self._acquire()
        try:
            for d in self._read():
                if d["id"] == item_id:
                    return ModerationItem.from_dict(d)
        finally:
            self._lock.release()
        raise NotFound(f"Unknown moderation item '{item_id}'")

    def find_open(self, content_type: str, content_id: str) -> Optional[ModerationItem]:
        """Return the unresolved item for a piece of content, if any."""
        for item in self.list_items():
            if (
                item.content_type.value == content_type
                and item.content_id == content_id
                and not item.status.is_terminal
            ):
                return item
        return None

    def add(self, item: ModerationItem) -> ModerationItem:
        self._acquire()
        try:
            items = self._read()
            items.append(item.to_dict())
            write_json(self._queue_path, items)
        finally:
            self._lock.release()
        return item

    def put(self, item: ModerationItem) -> ModerationItem:
        """Replace an existing item. Raises ``NotFound`` for unknown ids."""
        self._acquire()
        try:
            items = self._read()
            for index, d in enumerate(items):
                if d["id"] == item.id:
                    items[index] = item.to_dict()
                    write_json(self._queue_path, items)
                    return item
        finally:
            self._lock.release()
        raise NotFound(f"Unknown moderation item '{item.id}'")

"""Store en mémoire pour le dev local et les tests. Un seul process."""
import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from streaming.errors import StoreError

from .base import InferenceStore

logger = logging.getLogger("inference-store")


class MemoryInferenceStore(InferenceStore):

    def __init__(self):
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, record: dict[str, Any]) -> dict[str, Any]:
        correlation_id = record.get("_id")
        if not correlation_id:
            raise StoreError("create(): _id manquant")
        now = datetime.now(timezone.utc).isoformat()
        item = {"status": "pending", "is_completed": False, "created_at": now, **record}
        with self._lock:
            self._records[correlation_id] = item
        logger.info(f"create(): inference {correlation_id[:8]} créée")
        return copy.deepcopy(item)

    def update_by_id(self, correlation_id: str, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        with self._lock:
            item = self._records.get(correlation_id)
            if item is None:
                logger.warning(f"updateById(): inference {correlation_id[:8]} introuvable")
                return None
            item.update(copy.deepcopy(fields))
            item["updated_at"] = datetime.now(timezone.utc).isoformat()
            return copy.deepcopy(item)

    def get_by_id(self, correlation_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            item = self._records.get(correlation_id)
            return copy.deepcopy(item) if item else None

    def get_all_by_owner_key(self, owner_key: str) -> list[dict[str, Any]]:
        with self._lock:
            items = [copy.deepcopy(r) for r in self._records.values() if r.get("owner_key") == owner_key]
        return sorted(items, key=lambda r: r.get("created_at", ""))

"""
Store Redis - API et agrégateur peuvent tourner dans des process séparés.

Clés :
- inference:{id}             -> JSON de l'enregistrement
- inference:owner:{owner}    -> set des ids
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import redis

from streaming.errors import StoreError

from .base import InferenceStore

logger = logging.getLogger("inference-store")

RECORD_KEY = "inference:{}"
OWNER_KEY = "inference:owner:{}"


class RedisInferenceStore(InferenceStore):

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisInferenceStore":
        return cls(redis.from_url(url, decode_responses=True))

    def _load(self, correlation_id: str) -> Optional[dict[str, Any]]:
        raw = self._redis.get(RECORD_KEY.format(correlation_id))
        return json.loads(raw) if raw else None

    def _save(self, record: dict[str, Any]):
        self._redis.set(RECORD_KEY.format(record["_id"]), json.dumps(record, default=str))

    def create(self, record: dict[str, Any]) -> dict[str, Any]:
        correlation_id = record.get("_id")
        if not correlation_id:
            raise StoreError("create(): _id manquant")
        now = datetime.now(timezone.utc).isoformat()
        item = {"status": "pending", "is_completed": False, "created_at": now, **record}
        try:
            self._save(item)
            if item.get("owner_key"):
                self._redis.sadd(OWNER_KEY.format(item["owner_key"]), correlation_id)
        except redis.RedisError as e:
            raise StoreError(f"create(): {e}") from e
        logger.info(f"create(): inference {correlation_id[:8]} créée")
        return item

    def update_by_id(self, correlation_id: str, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        try:
            item = self._load(correlation_id)
            if item is None:
                logger.warning(f"updateById(): inference {correlation_id[:8]} introuvable")
                return None
            item.update(fields)
            item["updated_at"] = datetime.now(timezone.utc).isoformat()
            self._save(item)
        except redis.RedisError as e:
            raise StoreError(f"updateById(): {e}") from e
        logger.info(f"updateById(): inference {correlation_id[:8]} mise à jour")
        return item

    def get_by_id(self, correlation_id: str) -> Optional[dict[str, Any]]:
        try:
            return self._load(correlation_id)
        except redis.RedisError as e:
            raise StoreError(f"getById(): {e}") from e

    def get_all_by_owner_key(self, owner_key: str) -> list[dict[str, Any]]:
        try:
            ids = self._redis.smembers(OWNER_KEY.format(owner_key))
            items = [item for item in (self._load(cid) for cid in ids) if item]
        except redis.RedisError as e:
            raise StoreError(f"getAllByOwnerKey(): {e}") from e
        return sorted(items, key=lambda r: r.get("created_at", ""))

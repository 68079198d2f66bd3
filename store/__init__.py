"""Stockage durable des requêtes d'inférence et de leurs résultats."""
from config import REDIS_URL, STORE_BACKEND

from .base import InferenceStore
from .memory import MemoryInferenceStore
from .redis_store import RedisInferenceStore


def get_store(backend: str = STORE_BACKEND) -> InferenceStore:
    """Retourne le store configuré (STORE_BACKEND=memory|redis)."""
    if backend == "redis":
        return RedisInferenceStore.from_url(REDIS_URL)
    if backend == "memory":
        return MemoryInferenceStore()
    raise ValueError(f"STORE_BACKEND inconnu: {backend}")


__all__ = [
    "InferenceStore",
    "MemoryInferenceStore",
    "RedisInferenceStore",
    "get_store",
]

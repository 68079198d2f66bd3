"""Port de stockage : une requête d'inférence par correlation id."""
from abc import ABC, abstractmethod
from typing import Any, Optional


class InferenceStore(ABC):
    """
    Enregistrement créé avant l'envoi (status=pending), complété par
    l'agrégateur au chunk terminal (response, status, result, is_completed).
    """

    @abstractmethod
    def create(self, record: dict[str, Any]) -> dict[str, Any]:
        """record doit contenir "_id" (le correlation id) et "owner_key"."""
        pass

    @abstractmethod
    def update_by_id(self, correlation_id: str, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Fusionne fields dans l'enregistrement. None si absent."""
        pass

    @abstractmethod
    def get_by_id(self, correlation_id: str) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    def get_all_by_owner_key(self, owner_key: str) -> list[dict[str, Any]]:
        pass

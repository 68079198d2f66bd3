"""
Exceptions typées de la couche de streaming.

Les erreurs broker héritent toutes de BrokerError pour que le superviseur
et les appelants puissent les distinguer des erreurs provider.
"""
from typing import Optional


class BrokerError(Exception):
    """Erreur liée à RabbitMQ."""


class BrokerConnectionError(BrokerError):
    """Broker injoignable ou connexion perdue."""


class NotConnectedError(BrokerConnectionError):
    """Opération appelée avant connect()."""

    def __init__(self, operation: str):
        super().__init__(f"Non connecté à RabbitMQ ({operation})")
        self.operation = operation


class PublishError(BrokerError):
    """Le broker a refusé le message (nack ou non routable)."""

    def __init__(self, queue: str, reason: str):
        super().__init__(f"Publication refusée sur '{queue}': {reason}")
        self.queue = queue
        self.reason = reason


class MalformedMessageError(ValueError):
    """Payload impossible à décoder."""


class DuplicateCorrelationError(ValueError):
    """Un appelant est déjà enregistré pour ce correlation id."""

    def __init__(self, correlation_id: str):
        super().__init__(f"Correlation id déjà actif: {correlation_id}")
        self.correlation_id = correlation_id


class ProviderError(Exception):
    """Echec du provider de modèle pendant la génération."""

    def __init__(self, message: str, model: Optional[str] = None):
        self.message = message
        self.model = model
        super().__init__(message)


class UnknownModelError(ProviderError):
    """Modèle absent du registre ou désactivé."""

    def __init__(self, model: str):
        super().__init__(f"Modèle inconnu ou désactivé: {model}", model)


class StoreError(Exception):
    """Echec du stockage durable."""

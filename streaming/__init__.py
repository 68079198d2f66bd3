"""
Couche de streaming RabbitMQ pour l'inférence LLM.

Modules:
- connection: Connexion partagée (channel publication + channel consommation)
- topology: Déclaration des queues
- dispatcher: Envoi des requêtes + enregistrement de l'appelant
- relay: Worker -> provider -> chunks sur la queue de réponses
- aggregator: Reconstitution du texte, usage, persistance
- supervisor: Reconnexion automatique
- gateway: Assemblage côté service métier
- llm_worker: Process worker (python -m streaming.llm_worker)
"""
from .aggregator import ResponseAggregator
from .connection import BrokerConnection, Delivery
from .delivery import (
    AsyncStreamSink,
    CallbackTarget,
    ChunkReceived,
    DeliveryTarget,
    StreamEnded,
    StreamExpired,
)
from .dispatcher import RequestDispatcher
from .gateway import Gateway
from .messages import InferenceRequestMessage, StreamChunkMessage
from .registry import CorrelationRegistry
from .relay import StreamRelay
from .supervisor import ConsumerSpec, ReconnectionSupervisor
from .topology import QueueTopology

__all__ = [
    "AsyncStreamSink",
    "BrokerConnection",
    "CallbackTarget",
    "ChunkReceived",
    "ConsumerSpec",
    "CorrelationRegistry",
    "Delivery",
    "DeliveryTarget",
    "Gateway",
    "InferenceRequestMessage",
    "QueueTopology",
    "ReconnectionSupervisor",
    "RequestDispatcher",
    "ResponseAggregator",
    "StreamChunkMessage",
    "StreamEnded",
    "StreamExpired",
    "StreamRelay",
]

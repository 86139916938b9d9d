"""
CallRoute - Services Package

Interfaces and implementations for external collaborators:
- Intent classification
- Human handoff queue
- Number provisioning

Design Pattern:
    Each service defines a Protocol (interface) and one or more implementations.
    The routing service is configured with concrete implementations at startup,
    enabling dependency injection and easy testing/swapping of components.
"""

from .classifier import (
    IntentClassifier,
    KeywordIntentClassifier,
    HttpIntentClassifier,
    create_intent_classifier,
)
from .human_queue import HumanQueue, InMemoryHumanQueue, QueueEntry
from .provisioning import ProvisioningClient, RegistryProvisioningClient

__all__ = [
    # Classification
    "IntentClassifier",
    "KeywordIntentClassifier",
    "HttpIntentClassifier",
    "create_intent_classifier",
    # Handoff
    "HumanQueue",
    "InMemoryHumanQueue",
    "QueueEntry",
    # Provisioning
    "ProvisioningClient",
    "RegistryProvisioningClient",
]

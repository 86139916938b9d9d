"""
CallRoute - Provisioning Collaborator

Number purchase, porting and binding live outside the routing engine. The
routing API only delegates number listing to this collaborator; bindings
reach the Number Registry through NumberRegistry.replace_all().
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Any, Dict, List, Protocol, runtime_checkable

from app.core.number_registry import NumberRegistry


@runtime_checkable
class ProvisioningClient(Protocol):
    """Protocol for the external number provisioning service."""

    @abstractmethod
    async def list_numbers(self) -> List[Dict[str, Any]]:
        """Return provisioned numbers as serializable records."""
        ...


class RegistryProvisioningClient:
    """Provisioning client answering from the registry's current snapshot."""

    def __init__(self, registry: NumberRegistry):
        self._registry = registry

    async def list_numbers(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self._registry.list_numbers()]

"""
CallRoute - Flow Resolver

Loads a tenant's versioned call-flow configuration and tenant record.

Architecture:
    - FlowStore protocol abstracts the storage collaborator (read-only)
    - InMemoryFlowStore serves configuration loaded from the routing seed
    - FlowResolver caches loaded objects in immutable snapshots that are
      replaced copy-on-write, so concurrent readers never see a partial update

Fallback:
    A missing flow version falls back to the tenant's default version with a
    warning. Only when the default is missing as well does load() raise
    ConfigurationMissing.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Protocol, Tuple, runtime_checkable

from app.core.exceptions import ConfigurationMissing
from app.core.types import CallFlowVersion, Tenant

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class FlowStore(Protocol):
    """Read-only storage collaborator for tenants and flow versions."""

    @abstractmethod
    async def fetch_flow(self, tenant_id: str, version: str) -> Optional[CallFlowVersion]:
        """Return the flow version, or None if it does not exist."""
        ...

    @abstractmethod
    async def fetch_tenant(self, tenant_id: str) -> Optional[Tenant]:
        """Return the tenant, or None if it does not exist."""
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryFlowStore:
    """FlowStore backed by dictionaries (seed data and tests)."""

    def __init__(
        self,
        tenants: Iterable[Tenant] = (),
        flows: Iterable[CallFlowVersion] = (),
    ):
        self._tenants: Dict[str, Tenant] = {t.tenant_id: t for t in tenants}
        self._flows: Dict[Tuple[str, str], CallFlowVersion] = {
            (f.tenant_id, f.version): f for f in flows
        }

    async def fetch_flow(self, tenant_id: str, version: str) -> Optional[CallFlowVersion]:
        return self._flows.get((tenant_id, version))

    async def fetch_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self._tenants.get(tenant_id)

    def replace_all(self, tenants: Iterable[Tenant], flows: Iterable[CallFlowVersion]) -> None:
        """Swap in a new catalog; sessions keep the flow they already resolved."""
        self._tenants = {t.tenant_id: t for t in tenants}
        self._flows = {(f.tenant_id, f.version): f for f in flows}


# =============================================================================
# Resolver
# =============================================================================

class FlowResolver:
    """
    Cached, copy-on-write access to call-flow configuration.

    Usage:
        resolver = FlowResolver(store)
        flow = await resolver.load("tnt_bistro", "v3")
    """

    def __init__(self, store: FlowStore):
        self._store = store
        self._flows: Mapping[Tuple[str, str], CallFlowVersion] = MappingProxyType({})
        self._tenants: Mapping[str, Tenant] = MappingProxyType({})

    @property
    def store(self) -> FlowStore:
        return self._store

    async def load(self, tenant_id: str, flow_version: str) -> CallFlowVersion:
        """
        Load a flow version, falling back to the tenant default.

        Raises:
            ConfigurationMissing: If neither the requested nor the default
                version can be found
        """
        flow = await self._load_exact(tenant_id, flow_version)
        if flow is not None:
            return flow

        tenant = await self.load_tenant(tenant_id)
        default_version = tenant.default_flow_version

        logger.warning(
            "Flow version missing, falling back to tenant default: tenant=%s, requested=%s, default=%s",
            tenant_id,
            flow_version,
            default_version,
        )

        if default_version != flow_version:
            flow = await self._load_exact(tenant_id, default_version)
            if flow is not None:
                return flow

        raise ConfigurationMissing(
            f"No flow configuration for tenant {tenant_id}",
            details={"requested": flow_version, "default": default_version},
        )

    async def load_tenant(self, tenant_id: str) -> Tenant:
        """
        Load a tenant record.

        Raises:
            ConfigurationMissing: If the tenant does not exist
        """
        tenant = self._tenants.get(tenant_id)
        if tenant is not None:
            return tenant

        tenant = await self._store.fetch_tenant(tenant_id)
        if tenant is None:
            raise ConfigurationMissing(
                f"Tenant not configured: {tenant_id}",
                details={"tenant_id": tenant_id},
            )

        self._tenants = MappingProxyType({**self._tenants, tenant_id: tenant})
        return tenant

    def invalidate(self, tenant_id: str) -> None:
        """Drop cached configuration for a tenant (e.g. after a flow publish)."""
        self._flows = MappingProxyType({
            key: flow for key, flow in self._flows.items() if key[0] != tenant_id
        })
        self._tenants = MappingProxyType({
            key: tenant for key, tenant in self._tenants.items() if key != tenant_id
        })
        logger.info("Flow cache invalidated: tenant=%s", tenant_id)

    @property
    def cached_versions(self) -> int:
        return len(self._flows)

    @property
    def cached_tenant_ids(self) -> FrozenSet[str]:
        return frozenset(key[0] for key in self._flows) | frozenset(self._tenants)

    async def _load_exact(self, tenant_id: str, version: str) -> Optional[CallFlowVersion]:
        key = (tenant_id, version)
        flow = self._flows.get(key)
        if flow is not None:
            return flow

        flow = await self._store.fetch_flow(tenant_id, version)
        if flow is not None:
            self._flows = MappingProxyType({**self._flows, key: flow})
            logger.debug("Flow cached: tenant=%s, version=%s", tenant_id, version)
        return flow

"""
CallRoute - Routing Seed Catalog

Parses the routing seed document (tenants, flow versions, number bindings)
into immutable domain objects.

The seed stands in for the PhoneNumber / CallFlowVersion tables owned by the
storage collaborator. Format:

    {
        "tenants": [{"id": ..., "name": ..., "time_zone": ...,
                     "default_flow_version": ..., "policies": [...]}],
        "flows": [{"tenant_id": ..., "version": ..., "prompt": ..., ...}],
        "phone_numbers": [{"id": ..., "number": "+1...", "provider": ...,
                           "tenant_id": ..., "flow_version": ..., "status": ...}]
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

from app.core.exceptions import ConfigurationError
from app.core.types import (
    CallFlowVersion,
    NumberStatus,
    PhoneNumberRecord,
    Tenant,
    TenantPolicy,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutingCatalog:
    """Parsed routing configuration."""
    tenants: Tuple[Tenant, ...]
    flows: Tuple[CallFlowVersion, ...]
    phone_numbers: Tuple[PhoneNumberRecord, ...]


def load_routing_catalog(path: str) -> RoutingCatalog:
    """
    Load and validate the routing seed file.

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    seed_path = Path(path)
    try:
        raw = json.loads(seed_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Routing seed not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Routing seed is not valid JSON: {e}")

    catalog = parse_routing_catalog(raw)

    logger.info(
        "Routing catalog loaded: tenants=%d, flows=%d, numbers=%d",
        len(catalog.tenants),
        len(catalog.flows),
        len(catalog.phone_numbers),
    )
    return catalog


def parse_routing_catalog(raw: Dict[str, Any]) -> RoutingCatalog:
    """Build a RoutingCatalog from an already-decoded seed document."""
    try:
        tenants = tuple(_parse_tenant(t) for t in raw.get("tenants", []))
        flows = tuple(_parse_flow(f) for f in raw.get("flows", []))
        numbers = tuple(_parse_number(n) for n in raw.get("phone_numbers", []))
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid routing seed: {e}")

    tenant_ids = {t.tenant_id for t in tenants}
    for record in numbers:
        if record.tenant_id not in tenant_ids:
            raise ConfigurationError(
                f"Number {record.number_id} references unknown tenant {record.tenant_id}"
            )

    flow_keys = {(f.tenant_id, f.version) for f in flows}
    for flow in flows:
        if flow.tenant_id not in tenant_ids:
            raise ConfigurationError(
                f"Flow {flow.version} references unknown tenant {flow.tenant_id}"
            )

    for tenant in tenants:
        if (tenant.tenant_id, tenant.default_flow_version) not in flow_keys:
            raise ConfigurationError(
                f"Tenant {tenant.tenant_id} default flow {tenant.default_flow_version} is not defined"
            )

    return RoutingCatalog(tenants=tenants, flows=flows, phone_numbers=numbers)


# -----------------------------------------------------------------------------
# Record parsers
# -----------------------------------------------------------------------------

def _parse_policy(raw: Dict[str, Any]) -> TenantPolicy:
    return TenantPolicy(
        name=raw["name"],
        trigger_phrases=tuple(raw.get("trigger_phrases", [])),
        trigger_intents=tuple(raw.get("trigger_intents", [])),
        requires_human=bool(raw.get("requires_human", True)),
    )


def _parse_tenant(raw: Dict[str, Any]) -> Tenant:
    return Tenant(
        tenant_id=raw["id"],
        name=raw.get("name", raw["id"]),
        default_flow_version=raw["default_flow_version"],
        time_zone=raw.get("time_zone", "UTC"),
        policies=tuple(_parse_policy(p) for p in raw.get("policies", [])),
    )


def _parse_flow(raw: Dict[str, Any]) -> CallFlowVersion:
    dtmf: List[Tuple[str, str]] = sorted(
        (str(digit), intent) for digit, intent in raw.get("dtmf_intents", {}).items()
    )
    return CallFlowVersion(
        tenant_id=raw["tenant_id"],
        version=raw["version"],
        prompt=raw["prompt"],
        hints=tuple(raw.get("hints", [])),
        gather_timeout_seconds=int(raw.get("gather_timeout_seconds", 3)),
        t1=float(raw.get("t1", 0.7)),
        t2=float(raw.get("t2", 0.6)),
        keyword_triggers=tuple(raw.get("keyword_triggers", [])),
        max_attempts=int(raw.get("max_attempts", 3)),
        dtmf_intents=tuple(dtmf),
        human_queue=raw.get("human_queue", "level3_support"),
        wait_url=raw.get("wait_url", "/v1/voice/queue"),
        dial_number=raw.get("dial_number"),
    )


def _parse_number(raw: Dict[str, Any]) -> PhoneNumberRecord:
    return PhoneNumberRecord(
        number_id=raw["id"],
        e164=raw["number"],
        provider=raw["provider"],
        tenant_id=raw["tenant_id"],
        flow_version=raw["flow_version"],
        status=NumberStatus(raw.get("status", "active")),
    )

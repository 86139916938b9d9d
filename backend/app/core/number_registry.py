"""
CallRoute - Number Registry

Maps a dialed E.164 number to its tenant and active flow version.

Read path only. Bindings are replaced wholesale by the provisioning
collaborator (or the seed loader) via replace_all(); the snapshot is an
immutable mapping swapped by a single reference assignment, so concurrent
readers never observe a partial update and never take a lock.
"""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Iterable, List, Mapping, Tuple

from app.core.exceptions import InvalidNumberError
from app.core.types import NumberStatus, PhoneNumberRecord
from app.telephony.privacy import mask_phone_number, normalize_e164

logger = logging.getLogger(__name__)


class NumberRegistry:
    """
    Copy-on-write registry of number bindings.

    Usage:
        registry = NumberRegistry(records)
        tenant_id, flow_version = registry.lookup("+14155550100")
    """

    def __init__(self, records: Iterable[PhoneNumberRecord] = ()):
        self._snapshot: Mapping[str, PhoneNumberRecord] = MappingProxyType({})
        self.replace_all(records)

    def lookup(self, number: str) -> Tuple[str, str]:
        """
        Resolve a dialed number to (tenant_id, flow_version).

        Raises:
            InvalidNumberError: If the number is malformed, unregistered
                or not active
        """
        record = self.get(number)
        return record.tenant_id, record.flow_version

    def get(self, number: str) -> PhoneNumberRecord:
        """Return the full binding for a dialed number."""
        e164 = normalize_e164(number)
        if e164 is None:
            raise InvalidNumberError(
                "Malformed phone number",
                details={"number": mask_phone_number(number)},
            )

        record = self._snapshot.get(e164)
        if record is None:
            raise InvalidNumberError(
                "Phone number is not registered",
                details={"number": mask_phone_number(e164)},
            )

        if record.status != NumberStatus.ACTIVE:
            raise InvalidNumberError(
                "Phone number is not active",
                details={"number": mask_phone_number(e164), "status": record.status.value},
            )

        return record

    def replace_all(self, records: Iterable[PhoneNumberRecord]) -> None:
        """
        Atomically replace every binding.

        Raises:
            ValueError: If a record is not E.164 or a number is bound twice
        """
        bindings = {}
        for record in records:
            e164 = normalize_e164(record.e164)
            if e164 is None or e164 != record.e164:
                raise ValueError(f"Number binding {record.number_id} is not E.164")
            if e164 in bindings:
                raise ValueError(f"Number {mask_phone_number(e164)} is bound more than once")
            bindings[e164] = record

        self._snapshot = MappingProxyType(bindings)
        logger.info("Number registry updated: %d bindings", len(bindings))

    def list_numbers(self) -> List[PhoneNumberRecord]:
        return sorted(self._snapshot.values(), key=lambda r: r.number_id)

    def __len__(self) -> int:
        return len(self._snapshot)

"""DomainHandler interface.

A handler adapts one DNS provider. Providers come in two shapes and the shape
is expressed by which base class an adapter derives from, not by a runtime
flag:

    SingleDomainHandler   per-address create/delete
    GroupedDomainHandler  replace/delete the whole record set of a domain+type

The reconciliation engine dispatches on the base class; a handler deriving
from neither is rejected at registration time.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import AbstractSet, Dict, Optional, Sequence

from domainmanager.annotations import split_domain, zone_key_for
from domainmanager.models import HandlerShape, ProviderRecord, RecordType

logger = logging.getLogger(__name__)


class DomainHandler(ABC):
    """Abstract base class for DNS provider adapters."""

    def __init__(self) -> None:
        self._zone_cache: Dict[str, str] = {}

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @property
    @abstractmethod
    def shape(self) -> HandlerShape:
        pass

    @abstractmethod
    def fetch_zone_id(self, zone_key: str) -> Optional[str]:
        """Look up the provider-side zone identifier.

        Returns None if the provider does not know the zone. Raises
        ResolutionFailure if the lookup itself failed.
        """
        pass

    @abstractmethod
    def get_existing_records(self, domain: str) -> Sequence[ProviderRecord]:
        """Return the A/AAAA records currently published for `domain`.

        Raises FetchFailure if they cannot be read.
        """
        pass

    def lookup_zone_id(self, zone_key: str) -> Optional[str]:
        """Return the zone id for `zone_key`, preferring the local cache."""
        if zone_key in self._zone_cache:
            return self._zone_cache[zone_key]
        zone_id = self.fetch_zone_id(zone_key)
        if zone_id:
            logger.info(f"[{self.name}] Resolved zone '{zone_key}' to ID '{zone_id}'")
            self._zone_cache[zone_key] = zone_id
        return zone_id

    def zone_id_for_domain(self, domain: str) -> Optional[str]:
        return self.lookup_zone_id(zone_key_for(split_domain(domain)))

    def check_if_responsible(self, domain_labels: Sequence[str]) -> bool:
        """True if the provider's account actually hosts the zone of `domain_labels`."""
        return bool(self.lookup_zone_id(zone_key_for(domain_labels)))


class SingleDomainHandler(DomainHandler):
    """Provider accepting independent per-address record mutations."""

    @property
    def shape(self) -> HandlerShape:
        return HandlerShape.SINGLE

    @abstractmethod
    def ensure_single_record(
        self,
        domain: str,
        address: str,
        record_type: RecordType,
        existing: Sequence[ProviderRecord],
    ) -> None:
        """Create a record for `address`. Raises MutationFailure."""
        pass

    @abstractmethod
    def delete_single_record(
        self,
        domain: str,
        record: ProviderRecord,
        existing: Sequence[ProviderRecord],
    ) -> None:
        """Delete one existing record by its id. Raises MutationFailure."""
        pass


class GroupedDomainHandler(DomainHandler):
    """Provider that only supports replacing a whole record set."""

    @property
    def shape(self) -> HandlerShape:
        return HandlerShape.GROUPED

    @abstractmethod
    def ensure_grouped_record(
        self,
        domain: str,
        addresses: AbstractSet[str],
        record_type: RecordType,
        existing: Sequence[ProviderRecord],
    ) -> None:
        """Replace the record set with exactly `addresses`. Raises MutationFailure."""
        pass

    @abstractmethod
    def delete_grouped_record(
        self,
        domain: str,
        addresses: AbstractSet[str],
        record_type: RecordType,
        existing: Sequence[ProviderRecord],
    ) -> None:
        """Delete the record set currently holding `addresses`. Raises MutationFailure."""
        pass


def validate_handler(handler: DomainHandler) -> DomainHandler:
    if not isinstance(handler, (SingleDomainHandler, GroupedDomainHandler)):
        raise TypeError(
            f"Handler {handler!r} must derive from SingleDomainHandler or GroupedDomainHandler"
        )
    return handler

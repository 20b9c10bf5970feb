"""Responsibility resolution: which registered provider owns a domain's zone."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from domainmanager.annotations import zone_key_for
from domainmanager.handlers import DomainHandler, validate_handler
from domainmanager.models import ProviderError, ZoneBinding

logger = logging.getLogger(__name__)


class ProviderResolver:
    """Maps zones to the first registered handler that claims them.

    Bindings are cached for the lifetime of the resolver, including negative
    results (stored as None), so a zone is probed at most once.
    """

    def __init__(self, handlers: Sequence[DomainHandler] = ()):
        self._handlers: List[DomainHandler] = [validate_handler(h) for h in handlers]
        self._bindings: Dict[str, Optional[ZoneBinding]] = {}

    @property
    def handlers(self) -> List[DomainHandler]:
        return list(self._handlers)

    def resolve(self, domain_labels: Sequence[str]) -> Optional[ZoneBinding]:
        """Return the binding for the zone of `domain_labels`, or None if unmanaged."""
        zone_key = zone_key_for(domain_labels)
        if zone_key in self._bindings:
            return self._bindings[zone_key]

        binding: Optional[ZoneBinding] = None
        for handler in self._handlers:
            try:
                if not handler.check_if_responsible(domain_labels):
                    continue
                zone_id = handler.lookup_zone_id(zone_key) or zone_key
            except ProviderError as e:
                logger.warning(
                    f"Responsibility check of {handler.name} for zone '{zone_key}' failed, "
                    f"treating as not responsible: {e}"
                )
                continue
            binding = ZoneBinding(zone_key=zone_key, handler=handler, zone_id=zone_id)
            break

        if binding is None:
            logger.info(f"No provider is responsible for zone '{zone_key}', it will not be managed")
        else:
            logger.info(f"Zone '{zone_key}' is managed by {binding.provider_id} ({binding.zone_id})")
        self._bindings[zone_key] = binding
        return binding

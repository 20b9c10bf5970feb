"""Core data types shared by the parser, resolver and reconciliation engine."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, FrozenSet, Iterable, Optional, Tuple

if TYPE_CHECKING:
    from domainmanager.handlers import DomainHandler

# =============================================================================
# Enums
# =============================================================================


class RecordType(Enum):
    """Address record types managed by this tool."""

    A = "A"
    AAAA = "AAAA"


class HandlerShape(Enum):
    """Update model exposed by a DNS provider.

    SINGLE:  records can be created and deleted one address at a time.
    GROUPED: only the full record set for a domain+type can be replaced.
    """

    SINGLE = "single"
    GROUPED = "grouped"


# =============================================================================
# Errors
# =============================================================================


class DomainManagerError(Exception):
    """Base class for all domainmanager errors."""


class ConfigurationError(DomainManagerError):
    """Invalid startup configuration."""


class ProviderError(DomainManagerError):
    """A DNS provider call failed."""


class ResolutionFailure(ProviderError):
    """Provider could not confirm ownership of a zone."""


class FetchFailure(ProviderError):
    """Existing records for a domain could not be read."""


class MutationFailure(ProviderError):
    """A single create/delete/replace call failed."""


class AddressResolutionFailure(DomainManagerError):
    """A node hostname did not resolve to any address."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DomainClaim:
    """A node's declared desire to be registered (or removed) under a domain."""

    domain: str
    labels: Tuple[str, ...]
    wildcard: bool = False
    present: bool = True


@dataclass(frozen=True)
class ProviderRecord:
    """Read-only snapshot of an address record reported by a provider."""

    id: str
    record_type: RecordType
    value: str
    ttl: Optional[int] = None


@dataclass(frozen=True)
class ZoneBinding:
    """Resolved owner of a zone: the handler and its provider-side zone id."""

    zone_key: str
    handler: "DomainHandler"
    zone_id: str

    @property
    def provider_id(self) -> str:
        return self.handler.name


@dataclass
class NodeRecord:
    """Cached state of one node. Owned exclusively by NodeStateCache."""

    id: str
    hostname: str
    addresses_v4: FrozenSet[str] = field(default_factory=frozenset)
    addresses_v6: FrozenSet[str] = field(default_factory=frozenset)
    claims: FrozenSet[DomainClaim] = field(default_factory=frozenset)

    def addresses_for(self, record_type: RecordType) -> FrozenSet[str]:
        if record_type is RecordType.A:
            return self.addresses_v4
        return self.addresses_v6

    def claims_domain(self, domain: str) -> bool:
        """True if the current claim set asks for `domain` to be present."""
        return any(c.domain == domain and c.present for c in self.claims)


def split_addresses(addresses: Iterable[str]) -> Tuple[FrozenSet[str], FrozenSet[str]]:
    """Split address strings into (v4, v6) sets of normalized text.

    Invalid entries raise ValueError.
    """
    v4 = set()
    v6 = set()
    for raw in addresses:
        addr = ipaddress.ip_address(str(raw).strip())
        if addr.version == 4:
            v4.add(str(addr))
        else:
            v6.add(str(addr))
    return frozenset(v4), frozenset(v6)

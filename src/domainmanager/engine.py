"""Node state tracking and DNS reconciliation.

NodeStateCache keeps one NodeRecord per node and turns annotation changes into
claim deltas. ReconciliationEngine converges one domain at a time:

    single providers   create/delete the node's own addresses
    grouped providers  replace the record set with the union of the addresses
                       of every node currently claiming the domain

Events are processed sequentially. Nothing here retries: each failure is
logged and scoped to one mutation, one domain or one node.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from domainmanager.annotations import parse_annotations
from domainmanager.handlers import GroupedDomainHandler, SingleDomainHandler
from domainmanager.models import (
    AddressResolutionFailure,
    DomainClaim,
    NodeRecord,
    ProviderError,
    ProviderRecord,
    RecordType,
    split_addresses,
)
from domainmanager.resolver import ProviderResolver

logger = logging.getLogger(__name__)

# =============================================================================
# Address Resolution
# =============================================================================


def resolve_hostname(hostname: str) -> List[str]:
    """Resolve a node hostname to its address strings."""
    if not hostname:
        raise AddressResolutionFailure("Node has no hostname")
    try:
        infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as e:
        raise AddressResolutionFailure(f"DNS lookup failed for hostname {hostname}: {e}") from e
    # strip IPv6 scope ids ("fe80::1%eth0")
    return sorted({str(info[4][0]).split("%")[0] for info in infos})


def _normalize_address(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return value


# =============================================================================
# Claim Delta
# =============================================================================


@dataclass(frozen=True)
class ClaimDelta:
    """Domains to bring up (`added`) and to retire (`removed`)."""

    added: FrozenSet[str]
    removed: FrozenSet[str]

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)


def compute_claim_delta(
    previous: Iterable[DomainClaim], current: Iterable[DomainClaim]
) -> ClaimDelta:
    """Diff two claim sets keyed by domain.

    A domain is added when it becomes present, removed when it stops being
    present. A domain first seen with present=False is also treated as removed
    so that any records the node still has there get retired.
    """
    old = {c.domain: c.present for c in previous}
    new = {c.domain: c.present for c in current}

    added = {d for d, present in new.items() if present and not old.get(d, False)}
    removed = {d for d, present in old.items() if present and not new.get(d, False)}
    removed |= {d for d, present in new.items() if not present and d not in old}
    return ClaimDelta(added=frozenset(added), removed=frozenset(removed))


# =============================================================================
# Reconciliation Engine
# =============================================================================


class ReconcileOutcome(Enum):
    UNMANAGED = "unmanaged"
    FETCH_FAILED = "fetch_failed"
    APPLIED = "applied"


class ReconciliationEngine:
    """Converges provider records for one (node, domain) claim at a time."""

    def __init__(self, resolver: ProviderResolver, nodes: Mapping[str, NodeRecord]):
        self.resolver = resolver
        self._nodes = nodes

    def union_addresses(self, domain: str, record_type: RecordType) -> FrozenSet[str]:
        """Addresses of every node whose current claims ask for `domain`."""
        addresses = set()
        for node in self._nodes.values():
            if node.claims_domain(domain):
                addresses |= node.addresses_for(record_type)
        return frozenset(addresses)

    def reconcile(self, node: NodeRecord, claim: DomainClaim, present: bool) -> ReconcileOutcome:
        binding = self.resolver.resolve(claim.labels)
        if binding is None:
            logger.debug(f"[{node.id}] Domain {claim.domain} is not managed by any provider, skipping")
            return ReconcileOutcome.UNMANAGED

        handler = binding.handler
        action = "ensure" if present else "retire"
        logger.info(f"[{node.id}] Checking domain {claim.domain} ({action}) via {handler.name}")

        try:
            existing = list(handler.get_existing_records(claim.domain))
        except ProviderError as e:
            logger.warning(
                f"[{node.id}] Failed to get existing records for {claim.domain} from {handler.name}, "
                f"leaving it untouched: {e}"
            )
            return ReconcileOutcome.FETCH_FAILED

        if isinstance(handler, SingleDomainHandler):
            self._reconcile_single(handler, node, claim.domain, present, existing)
        elif isinstance(handler, GroupedDomainHandler):
            self._reconcile_grouped(handler, node, claim.domain, existing)
        else:
            raise TypeError(f"Unsupported handler type: {type(handler).__name__}")
        return ReconcileOutcome.APPLIED

    def _reconcile_single(
        self,
        handler: SingleDomainHandler,
        node: NodeRecord,
        domain: str,
        present: bool,
        existing: Sequence[ProviderRecord],
    ) -> None:
        for record_type in RecordType:
            for address in sorted(node.addresses_for(record_type)):
                match = next(
                    (
                        r
                        for r in existing
                        if r.record_type is record_type and _normalize_address(r.value) == address
                    ),
                    None,
                )
                if present:
                    if match is not None:
                        logger.debug(
                            f"[{node.id}] {record_type.value} record {domain} -> {address} already exists"
                        )
                        continue
                    try:
                        handler.ensure_single_record(domain, address, record_type, existing)
                        logger.info(
                            f"[{node.id}] Created {record_type.value} record {domain} -> {address}"
                        )
                    except ProviderError as e:
                        logger.warning(
                            f"[{node.id}] Failed to create {record_type.value} record "
                            f"{domain} -> {address}: {e}"
                        )
                else:
                    if match is None:
                        logger.debug(
                            f"[{node.id}] No {record_type.value} record {domain} -> {address} to delete"
                        )
                        continue
                    try:
                        handler.delete_single_record(domain, match, existing)
                        logger.info(
                            f"[{node.id}] Deleted {record_type.value} record {domain} -> {address}"
                        )
                    except ProviderError as e:
                        logger.warning(
                            f"[{node.id}] Failed to delete {record_type.value} record "
                            f"{domain} -> {address}: {e}"
                        )

    def _reconcile_grouped(
        self,
        handler: GroupedDomainHandler,
        node: NodeRecord,
        domain: str,
        existing: Sequence[ProviderRecord],
    ) -> None:
        # The union is rebuilt on every change touching the domain, whichever
        # node triggered it, for both families independently.
        for record_type in RecordType:
            desired = self.union_addresses(domain, record_type)
            published = frozenset(r.value for r in existing if r.record_type is record_type)
            current = frozenset(_normalize_address(v) for v in published)

            if desired:
                if desired == current:
                    logger.debug(
                        f"[{node.id}] {record_type.value} record set {domain} already up to date"
                    )
                    continue
                try:
                    handler.ensure_grouped_record(domain, desired, record_type, existing)
                    logger.info(
                        f"[{node.id}] Replaced {record_type.value} record set {domain} -> "
                        f"{', '.join(sorted(desired))}"
                    )
                except ProviderError as e:
                    logger.warning(
                        f"[{node.id}] Failed to replace {record_type.value} record set {domain}: {e}"
                    )
            elif published:
                try:
                    handler.delete_grouped_record(domain, published, record_type, existing)
                    logger.info(f"[{node.id}] Deleted {record_type.value} record set {domain}")
                except ProviderError as e:
                    logger.warning(
                        f"[{node.id}] Failed to delete {record_type.value} record set {domain}: {e}"
                    )
            else:
                logger.debug(f"[{node.id}] No {record_type.value} record set {domain} to delete")


# =============================================================================
# Node State Cache
# =============================================================================


class NodeStateCache:
    """Process-lifetime table of NodeRecords keyed by node name."""

    def __init__(
        self,
        resolver: ProviderResolver,
        address_resolver: Callable[[str], List[str]] = resolve_hostname,
    ):
        self._nodes: Dict[str, NodeRecord] = {}
        self._address_resolver = address_resolver
        self.engine = ReconciliationEngine(resolver, self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, node_id: str) -> Optional[NodeRecord]:
        return self._nodes.get(node_id)

    def _addresses(
        self, hostname: str, addresses: Optional[Iterable[str]]
    ) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        raw = list(addresses or [])
        if not raw:
            raw = self._address_resolver(hostname)
        try:
            v4, v6 = split_addresses(raw)
        except ValueError as e:
            raise AddressResolutionFailure(f"Invalid address for hostname {hostname}: {e}") from e
        if not v4 and not v6:
            raise AddressResolutionFailure(f"No addresses for hostname {hostname}")
        return v4, v6

    def upsert(
        self,
        node_id: str,
        hostname: str,
        addresses: Optional[Iterable[str]] = None,
        annotations: Optional[Mapping[str, str]] = None,
    ) -> bool:
        """Record the latest snapshot of a node and reconcile what changed.

        Addresses are resolved from `hostname` when no explicit addresses are
        given and the node is either new or its hostname changed. Returns False
        if the node could not be admitted.
        """
        node = self._nodes.get(node_id)
        explicit = list(addresses or [])
        rehosted = node is not None and bool(hostname) and hostname != node.hostname

        v4: FrozenSet[str] = frozenset()
        v6: FrozenSet[str] = frozenset()
        if node is None or explicit or rehosted:
            try:
                v4, v6 = self._addresses(hostname, explicit)
            except AddressResolutionFailure as e:
                if node is None:
                    logger.warning(f"[{node_id}] {e}; node not admitted")
                    return False
                logger.warning(f"[{node_id}] {e}; keeping previous addresses")
                v4, v6 = node.addresses_v4, node.addresses_v6

        new_claims = parse_annotations(annotations)

        if node is None:
            node = NodeRecord(id=node_id, hostname=hostname, addresses_v4=v4, addresses_v6=v6)
            self._nodes[node_id] = node
            logger.info(f"[{node_id}] Admitted node: {len(v4)} v4 addrs, {len(v6)} v6 addrs")
            stale_v4: FrozenSet[str] = frozenset()
            stale_v6: FrozenSet[str] = frozenset()
        elif explicit or rehosted:
            stale_v4 = node.addresses_v4 - v4
            stale_v6 = node.addresses_v6 - v6
        else:
            v4, v6 = node.addresses_v4, node.addresses_v6
            stale_v4 = stale_v6 = frozenset()

        addresses_changed = v4 != node.addresses_v4 or v6 != node.addresses_v6
        previous_claims = node.claims
        delta = compute_claim_delta(previous_claims, new_claims)
        retained = sorted(
            c.domain for c in new_claims if c.present and node.claims_domain(c.domain)
        )

        # State is updated before any provider call so that union
        # recomputation sees this node's current claims and addresses.
        retired_view = NodeRecord(
            id=node_id,
            hostname=node.hostname,
            addresses_v4=node.addresses_v4 | v4,
            addresses_v6=node.addresses_v6 | v6,
            claims=new_claims,
        )
        node.hostname = hostname or node.hostname
        node.addresses_v4 = v4
        node.addresses_v6 = v6
        node.claims = new_claims

        if not delta and not (addresses_changed and retained):
            logger.debug(f"[{node_id}] No domain changes")
            return True

        claims_by_domain = {c.domain: c for c in previous_claims}
        claims_by_domain.update({c.domain: c for c in new_claims})

        if addresses_changed and retained:
            logger.info(f"[{node_id}] Addresses changed, refreshing {len(retained)} domain(s)")
            stale_view = NodeRecord(
                id=node_id,
                hostname=node.hostname,
                addresses_v4=stale_v4,
                addresses_v6=stale_v6,
                claims=new_claims,
            )
            for domain in retained:
                claim = claims_by_domain[domain]
                if stale_v4 or stale_v6:
                    self.engine.reconcile(stale_view, claim, present=False)
                self.engine.reconcile(node, claim, present=True)

        for domain in sorted(delta.removed):
            self.engine.reconcile(retired_view, claims_by_domain[domain], present=False)
        for domain in sorted(delta.added):
            self.engine.reconcile(node, claims_by_domain[domain], present=True)
        return True

    def remove(self, node_id: str) -> bool:
        """Retire every claim of a node, then forget it."""
        node = self._nodes.get(node_id)
        if node is None:
            logger.warning(f"[{node_id}] Node not in cache, nothing to delete")
            return False

        logger.info(f"[{node_id}] Deleting node")
        previous_claims = node.claims
        delta = compute_claim_delta(previous_claims, frozenset())
        node.claims = frozenset()

        claims_by_domain = {c.domain: c for c in previous_claims}
        for domain in sorted(delta.removed):
            self.engine.reconcile(node, claims_by_domain[domain], present=False)

        del self._nodes[node_id]
        return True

"""Node annotation parsing.

Annotation grammar:

    <domain>/domainmanager            = "true" | "present" | "wildcard" | "false" | ...
    <domain>/domainmanager/wildcard   = "true"

"true", "present" and "wildcard" mean the domain should point at the node.
Values are compared exactly, so "True" or " true" are not present. Any other
value yields a claim with present=False, i.e. the node's records
for that domain should be removed. "wildcard" on the primary key, or the
companion wildcard key, additionally claims "*.<domain>".
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from domainmanager.models import DomainClaim

logger = logging.getLogger(__name__)

ANNOTATION_SUFFIX = "/domainmanager"
WILDCARD_SUFFIX = "/domainmanager/wildcard"
PRESENT_VALUES = frozenset({"true", "present", "wildcard"})


def zone_key_for(labels: Sequence[str]) -> str:
    """Return the registrable zone (last two labels) of a split domain."""
    return ".".join(labels[-2:])


def split_domain(domain: str) -> List[str]:
    return domain.split(".")


def _normalize_domain(raw: str) -> str:
    return raw.strip().rstrip(".").lower()


def _make_claim(domain: str, present: bool, wildcard: bool) -> Optional[DomainClaim]:
    labels = split_domain(domain)
    if len(labels) < 2 or not all(labels):
        logger.warning(f"Invalid domain '{domain}' in annotations, ignoring")
        return None
    if wildcard:
        domain = f"*.{domain}"
        labels = ["*"] + labels
    return DomainClaim(domain=domain, labels=tuple(labels), wildcard=wildcard, present=present)


def _merge(claims: Dict[str, DomainClaim], claim: Optional[DomainClaim]) -> None:
    if claim is None:
        return
    existing = claims.get(claim.domain)
    # present wins when several keys map to the same domain
    if existing is None or (claim.present and not existing.present):
        claims[claim.domain] = claim


def parse_annotations(annotations: Optional[Mapping[str, str]]) -> FrozenSet[DomainClaim]:
    """Turn a node's annotation map into its set of domain claims.

    Pure and order independent: keys are processed in sorted order so the same
    map always yields the same claim set.
    """
    claims: Dict[str, DomainClaim] = {}
    if not annotations:
        return frozenset()

    for key in sorted(annotations):
        value = str(annotations[key] or "")
        present = value in PRESENT_VALUES

        if key.endswith(WILDCARD_SUFFIX):
            domain = _normalize_domain(key[: -len(WILDCARD_SUFFIX)])
            _merge(claims, _make_claim(domain, present, wildcard=True))
        elif key.endswith(ANNOTATION_SUFFIX):
            domain = _normalize_domain(key[: -len(ANNOTATION_SUFFIX)])
            _merge(claims, _make_claim(domain, present, wildcard=False))
            if value == "wildcard":
                _merge(claims, _make_claim(domain, present, wildcard=True))

    return frozenset(claims.values())


def claimed_domains(claims: Iterable[DomainClaim]) -> List[str]:
    """Sorted domains from `claims` that are marked present."""
    return sorted(c.domain for c in claims if c.present)

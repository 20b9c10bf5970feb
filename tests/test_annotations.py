"""Unit tests for node annotation parsing.

Tests cover:
- Presence values (parse_annotations)
- Wildcard derivation
- Invalid domains
- Zone derivation (zone_key_for)
"""

import logging

from domainmanager.annotations import (
    claimed_domains,
    parse_annotations,
    split_domain,
    zone_key_for,
)
from domainmanager.models import DomainClaim

# =============================================================================
# Presence
# =============================================================================


def test_parse_annotations_empty() -> None:
    """No annotations means no claims."""
    assert parse_annotations({}) == frozenset()
    assert parse_annotations(None) == frozenset()


def test_parse_annotations_true_is_present() -> None:
    claims = parse_annotations({"app.example.com/domainmanager": "true"})

    assert claims == {
        DomainClaim(
            domain="app.example.com",
            labels=("app", "example", "com"),
            wildcard=False,
            present=True,
        )
    }


def test_parse_annotations_present_value() -> None:
    claims = parse_annotations({"app.example.com/domainmanager": "present"})

    assert claimed_domains(claims) == ["app.example.com"]


def test_parse_annotations_other_values_are_absent() -> None:
    """Anything other than true/present/wildcard yields present=False."""
    claims = parse_annotations(
        {
            "a.example.com/domainmanager": "false",
            "b.example.com/domainmanager": "yes",
            "c.example.com/domainmanager": "",
        }
    )

    assert {c.domain for c in claims} == {"a.example.com", "b.example.com", "c.example.com"}
    assert not any(c.present for c in claims)


def test_parse_annotations_values_are_case_sensitive() -> None:
    claims = parse_annotations(
        {
            "a.example.com/domainmanager": "True",
            "b.example.com/domainmanager": "PRESENT",
            "c.example.com/domainmanager": " true ",
            "d.example.com/domainmanager": "Wildcard",
        }
    )

    assert {c.domain for c in claims} == {
        "a.example.com",
        "b.example.com",
        "c.example.com",
        "d.example.com",
    }
    assert all(not c.present for c in claims)


def test_parse_annotations_ignores_unrelated_keys() -> None:
    claims = parse_annotations(
        {
            "kubernetes.io/hostname": "node-1",
            "app.example.com/other": "true",
            "app.example.com/domainmanager-extra": "true",
        }
    )

    assert claims == frozenset()


def test_parse_annotations_normalizes_domain() -> None:
    claims = parse_annotations({"App.Example.COM./domainmanager": "true"})

    assert claimed_domains(claims) == ["app.example.com"]


# =============================================================================
# Wildcards
# =============================================================================


def test_parse_annotations_wildcard_companion_key() -> None:
    """Companion wildcard key adds *.<domain> next to <domain>."""
    claims = parse_annotations(
        {
            "example.com/domainmanager": "true",
            "example.com/domainmanager/wildcard": "true",
        }
    )

    assert claimed_domains(claims) == ["*.example.com", "example.com"]
    wildcard = next(c for c in claims if c.wildcard)
    assert wildcard.labels == ("*", "example", "com")


def test_parse_annotations_wildcard_value() -> None:
    """Value "wildcard" on the primary key claims both names."""
    claims = parse_annotations({"example.com/domainmanager": "wildcard"})

    assert claimed_domains(claims) == ["*.example.com", "example.com"]


def test_parse_annotations_present_wins_on_duplicates() -> None:
    claims = parse_annotations(
        {
            "example.com/domainmanager": "wildcard",
            "example.com/domainmanager/wildcard": "false",
        }
    )

    assert claimed_domains(claims) == ["*.example.com", "example.com"]


# =============================================================================
# Validation and Determinism
# =============================================================================


def test_parse_annotations_rejects_single_label_domain(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        claims = parse_annotations({"localhost/domainmanager": "true"})

    assert claims == frozenset()
    assert "Invalid domain 'localhost'" in caplog.text


def test_parse_annotations_rejects_empty_labels() -> None:
    assert parse_annotations({"example..com/domainmanager": "true"}) == frozenset()


def test_parse_annotations_is_order_independent() -> None:
    items = [
        ("b.example.com/domainmanager", "true"),
        ("a.example.com/domainmanager", "false"),
        ("example.com/domainmanager/wildcard", "true"),
    ]

    forward = parse_annotations(dict(items))
    backward = parse_annotations(dict(reversed(items)))

    assert forward == backward


# =============================================================================
# Zones
# =============================================================================


def test_zone_key_uses_last_two_labels() -> None:
    assert zone_key_for(split_domain("a.b.example.com")) == "example.com"


def test_zone_key_of_wildcard() -> None:
    assert zone_key_for(("*", "example", "com")) == "example.com"


def test_zone_key_of_apex() -> None:
    assert zone_key_for(["example", "com"]) == "example.com"

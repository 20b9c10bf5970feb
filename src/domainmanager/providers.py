"""DNS provider adapters.

Supported providers:
    - cloudflare: Cloudflare API v4 (single-record shape)
    - route53:    AWS Route 53 (grouped-record shape)
    - dummy:      in-memory records, accepts every zone (single-record shape)
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import AbstractSet, Any, Dict, List, Optional, Sequence

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from domainmanager.handlers import GroupedDomainHandler, SingleDomainHandler
from domainmanager.models import (
    FetchFailure,
    MutationFailure,
    ProviderRecord,
    RecordType,
    ResolutionFailure,
)

logger = logging.getLogger(__name__)

MANAGED_TYPES = {t.value: t for t in RecordType}

# =============================================================================
# Cloudflare
# =============================================================================


class CloudflareDomainHandler(SingleDomainHandler):
    """Cloudflare DNS via the v4 REST API."""

    BASE_URL = "https://api.cloudflare.com/client/v4"

    def __init__(
        self,
        api_token: str = "",
        api_email: str = "",
        api_key: str = "",
        timeout_seconds: float = 10.0,
        base_url: str = BASE_URL,
    ):
        super().__init__()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        if api_token:
            self._session.headers.update({"Authorization": f"Bearer {api_token}"})
        elif api_email and api_key:
            self._session.headers.update({"X-Auth-Email": api_email, "X-Auth-Key": api_key})

    @property
    def name(self) -> str:
        return "cloudflare"

    def _result(self, response: requests.Response) -> Any:
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict) or not data.get("success", False):
            errors = data.get("errors") if isinstance(data, dict) else data
            raise requests.exceptions.RequestException(f"Cloudflare API error: {errors}")
        return data.get("result")

    def fetch_zone_id(self, zone_key: str) -> Optional[str]:
        try:
            response = self._session.get(
                f"{self._base_url}/zones", params={"name": zone_key}, timeout=self._timeout
            )
            zones = self._result(response)
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise ResolutionFailure(f"Failed to look up zone '{zone_key}': {e}") from e

        if not zones:
            return None
        zone_id = zones[0].get("id") if isinstance(zones[0], dict) else None
        return str(zone_id) if zone_id else None

    def _require_zone_id(self, domain: str, error_cls: type) -> str:
        try:
            zone_id = self.zone_id_for_domain(domain)
        except ResolutionFailure as e:
            raise error_cls(str(e)) from e
        if not zone_id:
            raise error_cls(f"No Cloudflare zone for '{domain}'")
        return zone_id

    def get_existing_records(self, domain: str) -> Sequence[ProviderRecord]:
        zone_id = self._require_zone_id(domain, FetchFailure)
        try:
            response = self._session.get(
                f"{self._base_url}/zones/{zone_id}/dns_records",
                params={"name": domain, "per_page": 100},
                timeout=self._timeout,
            )
            result = self._result(response)
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise FetchFailure(f"Failed to get records for {domain}: {e}") from e

        records: List[ProviderRecord] = []
        for r in result or []:
            if not isinstance(r, dict):
                logger.warning(f"Skipping malformed record: {r}")
                continue
            record_type = MANAGED_TYPES.get(r.get("type"))
            if record_type is None or r.get("name") != domain:
                continue
            records.append(
                ProviderRecord(
                    id=str(r.get("id")),
                    record_type=record_type,
                    value=str(r.get("content")),
                    ttl=r.get("ttl"),
                )
            )
        return records

    def ensure_single_record(
        self,
        domain: str,
        address: str,
        record_type: RecordType,
        existing: Sequence[ProviderRecord],
    ) -> None:
        zone_id = self._require_zone_id(domain, MutationFailure)
        data = {
            "type": record_type.value,
            "name": domain,
            "content": address,
            "ttl": 1,
            "proxied": False,
        }
        try:
            response = self._session.post(
                f"{self._base_url}/zones/{zone_id}/dns_records", json=data, timeout=self._timeout
            )
            self._result(response)
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise MutationFailure(
                f"Failed to create {record_type.value} record {domain} -> {address}: {e}"
            ) from e

    def delete_single_record(
        self,
        domain: str,
        record: ProviderRecord,
        existing: Sequence[ProviderRecord],
    ) -> None:
        zone_id = self._require_zone_id(domain, MutationFailure)
        try:
            response = self._session.delete(
                f"{self._base_url}/zones/{zone_id}/dns_records/{record.id}", timeout=self._timeout
            )
            self._result(response)
        except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
            raise MutationFailure(
                f"Failed to delete {record.record_type.value} record {domain} -> {record.value}: {e}"
            ) from e


# =============================================================================
# Route 53
# =============================================================================


def unescape_route53_name(name: str) -> str:
    """Convert a Route 53 record name into the plain domain it stands for."""
    return name.rstrip(".").replace("\\052", "*")


class Route53DomainHandler(GroupedDomainHandler):
    """AWS Route 53 via boto3. Record sets are replaced as a whole."""

    COMMENT = "Managed by domainmanager"

    def __init__(
        self,
        access_key_id: str = "",
        secret_access_key: str = "",
        region: str = "eu-central-1",
        ttl: int = 60,
        client: Any = None,
    ):
        super().__init__()
        self._ttl = ttl
        if client is not None:
            self._client = client
        else:
            self._client = boto3.client(
                "route53",
                aws_access_key_id=access_key_id or None,
                aws_secret_access_key=secret_access_key or None,
                region_name=region,
            )

    @property
    def name(self) -> str:
        return "route53"

    def fetch_zone_id(self, zone_key: str) -> Optional[str]:
        dns_name = f"{zone_key}."
        try:
            resp = self._client.list_hosted_zones_by_name(DNSName=dns_name, MaxItems="1")
        except (BotoCoreError, ClientError) as e:
            raise ResolutionFailure(f"Failed to look up hosted zone '{dns_name}': {e}") from e

        zones = resp.get("HostedZones", [])
        # Route 53 returns the next zone in lexical order when there is no exact match
        if not zones or zones[0].get("Name") != dns_name:
            return None
        return zones[0]["Id"]

    def _require_zone_id(self, domain: str, error_cls: type) -> str:
        try:
            zone_id = self.zone_id_for_domain(domain)
        except ResolutionFailure as e:
            raise error_cls(str(e)) from e
        if not zone_id:
            raise error_cls(f"No Route 53 hosted zone for '{domain}'")
        return zone_id

    def get_existing_records(self, domain: str) -> Sequence[ProviderRecord]:
        zone_id = self._require_zone_id(domain, FetchFailure)
        try:
            resp = self._client.list_resource_record_sets(
                HostedZoneId=zone_id, StartRecordName=domain, MaxItems="10"
            )
        except (BotoCoreError, ClientError) as e:
            raise FetchFailure(f"Failed to get records for {domain}: {e}") from e

        records: List[ProviderRecord] = []
        for rs in resp.get("ResourceRecordSets", []):
            if unescape_route53_name(rs.get("Name", "")) != domain:
                continue
            record_type = MANAGED_TYPES.get(rs.get("Type"))
            if record_type is None:
                continue
            for rr in rs.get("ResourceRecords", []):
                value = rr["Value"]
                records.append(
                    ProviderRecord(
                        # Route 53 has no per-record ids
                        id=f"{record_type.value}:{value}",
                        record_type=record_type,
                        value=value,
                        ttl=rs.get("TTL"),
                    )
                )
        return records

    def _change(
        self, action: str, domain: str, addresses: AbstractSet[str], record_type: RecordType, ttl: int
    ) -> None:
        zone_id = self._require_zone_id(domain, MutationFailure)
        change_batch = {
            "Comment": self.COMMENT,
            "Changes": [
                {
                    "Action": action,
                    "ResourceRecordSet": {
                        "Name": domain,
                        "Type": record_type.value,
                        "TTL": ttl,
                        "ResourceRecords": [{"Value": a} for a in sorted(addresses)],
                    },
                }
            ],
        }
        try:
            self._client.change_resource_record_sets(HostedZoneId=zone_id, ChangeBatch=change_batch)
        except (BotoCoreError, ClientError) as e:
            raise MutationFailure(
                f"Failed {action} of {record_type.value} record set {domain}: {e}"
            ) from e

    def ensure_grouped_record(
        self,
        domain: str,
        addresses: AbstractSet[str],
        record_type: RecordType,
        existing: Sequence[ProviderRecord],
    ) -> None:
        self._change("UPSERT", domain, addresses, record_type, self._ttl)

    def delete_grouped_record(
        self,
        domain: str,
        addresses: AbstractSet[str],
        record_type: RecordType,
        existing: Sequence[ProviderRecord],
    ) -> None:
        # DELETE must match the published TTL exactly
        ttl = next(
            (r.ttl for r in existing if r.record_type is record_type and r.ttl is not None),
            self._ttl,
        )
        self._change("DELETE", domain, addresses, record_type, ttl)


# =============================================================================
# Dummy (in-memory)
# =============================================================================


class DummyDomainHandler(SingleDomainHandler):
    """In-memory provider. Accepts every zone; nothing leaves the process."""

    def __init__(self) -> None:
        super().__init__()
        self.records: Dict[str, List[ProviderRecord]] = {}

    @property
    def name(self) -> str:
        return "dummy"

    def fetch_zone_id(self, zone_key: str) -> Optional[str]:
        return zone_key

    def get_existing_records(self, domain: str) -> Sequence[ProviderRecord]:
        return list(self.records.get(domain, []))

    def ensure_single_record(
        self,
        domain: str,
        address: str,
        record_type: RecordType,
        existing: Sequence[ProviderRecord],
    ) -> None:
        record = ProviderRecord(id=str(uuid.uuid4()), record_type=record_type, value=address)
        self.records.setdefault(domain, []).append(record)
        logger.info(f"[{self.name}] Stored {record_type.value} record {domain} -> {address}")

    def delete_single_record(
        self,
        domain: str,
        record: ProviderRecord,
        existing: Sequence[ProviderRecord],
    ) -> None:
        remaining = [r for r in self.records.get(domain, []) if r.id != record.id]
        if remaining:
            self.records[domain] = remaining
        else:
            self.records.pop(domain, None)

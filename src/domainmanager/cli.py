#!/usr/bin/env python3
"""domainmanager - Node DNS Synchronization

Keeps DNS records for Kubernetes nodes in sync with per-node annotations,
across one or more DNS providers.

Node annotations:

    <domain>/domainmanager           "true" | "present" | "wildcard" -> publish
                                     anything else                   -> remove
    <domain>/domainmanager/wildcard  "true" -> also publish *.<domain>

Only nodes labelled "<MANAGED_LABEL>=yes" are watched. Their addresses are
resolved from the "<HOSTNAME_LABEL>" label.

Supported DNS Providers:
    - cloudflare: Cloudflare (per-record updates)
    - route53:    AWS Route 53 (whole record set updates)
    - dummy:      in-memory, nothing is published

Environment variables:

    Provider Selection:
        DNS_PROVIDERS          Comma-separated providers in registration order.
                               The first provider that hosts a domain's zone owns it.
                               (default: cloudflare,route53)
        DOMAINMANAGER_CONFIG_PATH
                               YAML file or directory of *.yaml files with a
                               "providers" list. Takes precedence over the
                               provider env variables below when present.
                               Example config file:
                                 providers:
                                   - type: "cloudflare"
                                     api_token: "..."
                                   - type: "route53"
                                     access_key_id: "..."
                                     secret_access_key: "..."
                                     ttl: 300
        DRY_RUN                Register only the in-memory dummy provider

    Cloudflare:
        CLOUDFLARE_API_TOKEN   API token (preferred)
        CF_API_EMAIL           Account email (legacy global key auth)
        CF_API_KEY             Global API key (legacy global key auth)

    Route 53:
        AWS_ACCESS_KEY_ID      Access key
        AWS_SECRET_ACCESS_KEY  Secret key
        AWS_REGION             Region (default: eu-central-1)
        ROUTE53_TTL            TTL of managed record sets (default: 60)

    Kubernetes:
        KUBECONFIG             Path to kubeconfig (default: in-cluster config)
        MANAGED_LABEL          Gate label, nodes need "<label>=yes"
                               (default: domainmanager.example.org)
        HOSTNAME_LABEL         Label used for address resolution
                               (default: kubernetes.io/hostname)
        WATCH_TIMEOUT_SECONDS  Server-side watch timeout (default: 60)

    Runtime:
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List

import yaml

from domainmanager.engine import NodeStateCache
from domainmanager.events import KubernetesNodeSource, dispatch, load_kube_config
from domainmanager.handlers import DomainHandler
from domainmanager.models import ConfigurationError
from domainmanager.providers import (
    CloudflareDomainHandler,
    DummyDomainHandler,
    Route53DomainHandler,
)
from domainmanager.resolver import ProviderResolver

# =============================================================================
# Configuration
# =============================================================================

DNS_PROVIDERS = os.getenv("DNS_PROVIDERS", "cloudflare,route53")
DOMAINMANAGER_CONFIG_PATH = os.getenv("DOMAINMANAGER_CONFIG_PATH", "")
DRY_RUN = os.getenv("DRY_RUN", "")

# Cloudflare configuration
CLOUDFLARE_API_TOKEN = os.getenv("CLOUDFLARE_API_TOKEN", "")
CF_API_EMAIL = os.getenv("CF_API_EMAIL", "")
CF_API_KEY = os.getenv("CF_API_KEY", "")

# Route 53 configuration
AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID", "")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY", "")
AWS_REGION = os.getenv("AWS_REGION", "eu-central-1")
ROUTE53_TTL = os.getenv("ROUTE53_TTL", "60")

# Kubernetes configuration
KUBECONFIG = os.getenv("KUBECONFIG", "")
MANAGED_LABEL = os.getenv("MANAGED_LABEL", "domainmanager.example.org")
HOSTNAME_LABEL = os.getenv("HOSTNAME_LABEL", "kubernetes.io/hostname")
WATCH_TIMEOUT_SECONDS = os.getenv("WATCH_TIMEOUT_SECONDS", "60")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(value: Any, name: str) -> int:
    try:
        return int(str(value).strip())
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got '{value}'") from e


def _parse_provider_list(value: str) -> List[str]:
    return [p.strip().lower() for p in value.split(",") if p.strip()]


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def load_provider_configs(config_path: str) -> List[Dict[str, Any]]:
    """Read the "providers" entries of every YAML config file, in file order."""
    entries: List[Dict[str, Any]] = []
    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config from {config_file}: {e}")
            continue

        if not isinstance(config_data, dict) or "providers" not in config_data:
            logger.warning(f"Config file {config_file} missing 'providers' key")
            continue

        for item in config_data["providers"] or []:
            if not isinstance(item, dict) or not str(item.get("type") or "").strip():
                logger.warning(f"Skipping malformed provider entry in {config_file}: {item}")
                continue
            entries.append({str(k): v for k, v in item.items()})
    return entries


def env_provider_configs(provider_names: Iterable[str]) -> List[Dict[str, Any]]:
    """Build provider entries from the environment, in the given order."""
    entries: List[Dict[str, Any]] = []
    for name in provider_names:
        if name == "cloudflare":
            entries.append(
                {
                    "type": "cloudflare",
                    "api_token": CLOUDFLARE_API_TOKEN,
                    "api_email": CF_API_EMAIL,
                    "api_key": CF_API_KEY,
                }
            )
        elif name == "route53":
            entries.append(
                {
                    "type": "route53",
                    "access_key_id": AWS_ACCESS_KEY_ID,
                    "secret_access_key": AWS_SECRET_ACCESS_KEY,
                    "region": AWS_REGION,
                    "ttl": ROUTE53_TTL,
                }
            )
        elif name == "dummy":
            entries.append({"type": "dummy"})
        else:
            raise ConfigurationError(
                f"Unsupported DNS provider: '{name}'. Supported providers: cloudflare, route53, dummy"
            )
    return entries


# =============================================================================
# Provider Registry
# =============================================================================


def create_domain_handler(entry: Dict[str, Any]) -> DomainHandler | None:
    """Create one handler from a provider entry.

    Returns None when the entry carries no credentials, so that unconfigured
    providers are simply not registered.
    """
    provider_type = str(entry.get("type") or "").strip().lower()

    if provider_type == "cloudflare":
        token = str(entry.get("api_token") or "").strip()
        email = str(entry.get("api_email") or "").strip()
        key = str(entry.get("api_key") or "").strip()
        if not token and not (email and key):
            logger.warning("Cloudflare credentials not set, provider not registered")
            return None
        return CloudflareDomainHandler(api_token=token, api_email=email, api_key=key)

    if provider_type == "route53":
        access_key = str(entry.get("access_key_id") or "").strip()
        secret_key = str(entry.get("secret_access_key") or "").strip()
        if not access_key or not secret_key:
            logger.warning("Route 53 credentials not set, provider not registered")
            return None
        return Route53DomainHandler(
            access_key_id=access_key,
            secret_access_key=secret_key,
            region=str(entry.get("region") or "eu-central-1"),
            ttl=_parse_int(entry.get("ttl", 60), "ttl"),
        )

    if provider_type == "dummy":
        return DummyDomainHandler()

    raise ConfigurationError(
        f"Unsupported DNS provider: '{provider_type}'. Supported providers: cloudflare, route53, dummy"
    )


def create_domain_handlers() -> List[DomainHandler]:
    """Build the registered handlers from configuration, in registration order."""
    if _parse_bool(DRY_RUN, default=False):
        logger.info("DRY_RUN set, only the in-memory provider is registered")
        return [DummyDomainHandler()]

    entries: List[Dict[str, Any]] = []
    if DOMAINMANAGER_CONFIG_PATH:
        entries = load_provider_configs(DOMAINMANAGER_CONFIG_PATH)
        if entries:
            logger.info(f"Loaded {len(entries)} provider(s) from {DOMAINMANAGER_CONFIG_PATH}")
    if not entries:
        entries = env_provider_configs(_parse_provider_list(DNS_PROVIDERS))

    handlers: List[DomainHandler] = []
    for entry in entries:
        handler = create_domain_handler(entry)
        if handler is not None:
            handlers.append(handler)
    return handlers


# =============================================================================
# Main
# =============================================================================


def run(source: KubernetesNodeSource, cache: NodeStateCache) -> None:
    """Process node events one at a time until the source is stopped."""
    for event in source.events():
        try:
            dispatch(event, cache)
        except Exception as e:
            logger.error(f"[{event.node.name}] Failed to process node event: {e}", exc_info=True)


def main():
    """Main entry point."""
    try:
        handlers = create_domain_handlers()
        watch_timeout = _parse_int(WATCH_TIMEOUT_SECONDS, "WATCH_TIMEOUT_SECONDS")
    except ConfigurationError as e:
        logger.error(f"Configuration validation failed: {e}")
        sys.exit(1)

    if handlers:
        logger.info(f"DNS Providers: {', '.join(h.name for h in handlers)}")
    else:
        logger.warning("No DNS provider configured, running as observer only")
    logger.info(f"Managed nodes: {MANAGED_LABEL}=yes, hostname label {HOSTNAME_LABEL}")

    try:
        load_kube_config(KUBECONFIG)
    except Exception as e:
        logger.error(f"Failed to initialize kubeconfig: {e}")
        sys.exit(1)

    stop = threading.Event()

    def _shutdown(signum, frame):
        logger.info("Shutting down gracefully...")
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    cache = NodeStateCache(ProviderResolver(handlers))
    source = KubernetesNodeSource(
        managed_label=MANAGED_LABEL,
        hostname_label=HOSTNAME_LABEL,
        timeout_seconds=watch_timeout,
        stop=stop,
    )

    try:
        run(source, cache)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

"""Node events.

Kubernetes watch payloads are validated once here and turned into typed
events; everything downstream only sees NodeAdded, NodeUpdated and NodeRemoved.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple, Union

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from domainmanager.engine import NodeStateCache

logger = logging.getLogger(__name__)

HOSTNAME_LABEL = "kubernetes.io/hostname"

# =============================================================================
# Event Types
# =============================================================================


@dataclass(frozen=True)
class NodeSnapshot:
    name: str
    hostname: str
    annotations: Dict[str, str] = field(default_factory=dict)
    addresses: Tuple[str, ...] = ()


@dataclass(frozen=True)
class NodeAdded:
    node: NodeSnapshot


@dataclass(frozen=True)
class NodeUpdated:
    node: NodeSnapshot


@dataclass(frozen=True)
class NodeRemoved:
    node: NodeSnapshot


NodeEvent = Union[NodeAdded, NodeUpdated, NodeRemoved]

_EVENT_TYPES = {"ADDED": NodeAdded, "MODIFIED": NodeUpdated, "DELETED": NodeRemoved}


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def snapshot_from_node(obj: Any, hostname_label: str = HOSTNAME_LABEL) -> Optional[NodeSnapshot]:
    """Build a NodeSnapshot from a V1Node (or its dict form).

    Returns None if the node has no name or no hostname label.
    """
    metadata = _get(obj, "metadata")
    name = _get(metadata, "name") if metadata is not None else None
    if not name:
        logger.warning(f"Ignoring node object without a name: {obj!r:.200}")
        return None

    labels = _get(metadata, "labels") or {}
    hostname = labels.get(hostname_label, "")
    if not hostname:
        logger.warning(f"[{name}] Node has no '{hostname_label}' label, ignoring")
        return None

    annotations = {str(k): str(v) for k, v in (_get(metadata, "annotations") or {}).items()}
    return NodeSnapshot(name=str(name), hostname=str(hostname), annotations=annotations)


def node_event_from_watch(
    event_type: str, obj: Any, hostname_label: str = HOSTNAME_LABEL
) -> Optional[NodeEvent]:
    """Translate one watch event into a typed NodeEvent, or None if unusable."""
    event_cls = _EVENT_TYPES.get(event_type)
    if event_cls is None:
        logger.debug(f"Ignoring watch event of type {event_type}")
        return None
    snapshot = snapshot_from_node(obj, hostname_label)
    if snapshot is None:
        return None
    return event_cls(snapshot)


# =============================================================================
# Dispatch
# =============================================================================


def dispatch(event: NodeEvent, cache: NodeStateCache) -> None:
    """Apply one node event to the cache."""
    node = event.node
    if isinstance(event, NodeRemoved):
        cache.remove(node.name)
    elif isinstance(event, (NodeAdded, NodeUpdated)):
        if isinstance(event, NodeUpdated) and node.name not in cache:
            logger.info(f"[{node.name}] Node not in cache, assuming create")
        cache.upsert(node.name, node.hostname, node.addresses, node.annotations)
    else:
        raise TypeError(f"Unknown node event: {event!r}")


# =============================================================================
# Kubernetes Source
# =============================================================================


def load_kube_config(kubeconfig: str = "") -> None:
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
    else:
        config.load_incluster_config()


class KubernetesNodeSource:
    """Lists, then watches, nodes carrying the managed label.

    Yields typed events in delivery order until `stop` is set. Watches are
    opened with a server-side timeout so the stop flag is checked regularly.
    API and connection errors are logged and followed by a relist after
    `retry_delay` seconds.
    """

    def __init__(
        self,
        managed_label: str,
        hostname_label: str = HOSTNAME_LABEL,
        timeout_seconds: int = 60,
        api: Optional[client.CoreV1Api] = None,
        stop: Optional[threading.Event] = None,
        retry_delay: float = 5.0,
    ):
        self._label_selector = f"{managed_label}=yes"
        self._hostname_label = hostname_label
        self._timeout = timeout_seconds
        self._retry_delay = retry_delay
        self._api = api or client.CoreV1Api()
        self.stop = stop or threading.Event()
        self._known: Set[str] = set()

    def _track(self, event: NodeEvent) -> NodeEvent:
        if isinstance(event, NodeRemoved):
            self._known.discard(event.node.name)
        else:
            self._known.add(event.node.name)
        return event

    def _list(self) -> Tuple[str, Iterator[NodeEvent]]:
        node_list = self._api.list_node(label_selector=self._label_selector)
        resource_version = node_list.metadata.resource_version
        events: List[NodeEvent] = []
        for item in node_list.items:
            event = node_event_from_watch("ADDED", item, self._hostname_label)
            if event is not None:
                events.append(event)
        logger.info(f"Listed {len(events)} managed node(s) (selector {self._label_selector})")

        # nodes that vanished while no watch was open
        listed = {e.node.name for e in events}
        for name in sorted(self._known - listed):
            events.append(NodeRemoved(NodeSnapshot(name=name, hostname="")))
        return resource_version, iter(events)

    def _backoff(self, reason: str) -> None:
        logger.warning(f"{reason}; relisting in {self._retry_delay:g}s")
        self.stop.wait(self._retry_delay)

    def events(self) -> Iterator[NodeEvent]:
        resource_version = ""
        while not self.stop.is_set():
            if not resource_version:
                try:
                    resource_version, listed = self._list()
                except (ApiException, HTTPError) as e:
                    self._backoff(f"Listing nodes failed: {e}")
                    continue
                for event in listed:
                    if self.stop.is_set():
                        return
                    yield self._track(event)
                if self.stop.is_set():
                    return

            w = watch.Watch()
            try:
                for raw in w.stream(
                    self._api.list_node,
                    label_selector=self._label_selector,
                    resource_version=resource_version,
                    timeout_seconds=self._timeout,
                ):
                    if self.stop.is_set():
                        w.stop()
                        return
                    obj = raw.get("object")
                    if raw.get("type") == "ERROR":
                        logger.warning(f"Watch returned an error, relisting: {raw.get('raw_object')}")
                        resource_version = ""
                        break
                    version = _get(_get(obj, "metadata"), "resource_version")
                    if version:
                        resource_version = version
                    event = node_event_from_watch(raw.get("type", ""), obj, self._hostname_label)
                    if event is not None:
                        yield self._track(event)
            except ApiException as e:
                resource_version = ""
                if e.status == 410:
                    logger.info("Watch resource version expired, relisting")
                else:
                    self._backoff(f"Watch failed with status {e.status}")
            except HTTPError as e:
                resource_version = ""
                self._backoff(f"Watch connection failed: {e}")
            finally:
                w.stop()

"""Unit tests for node event translation, dispatch and the Kubernetes source."""

from typing import List
from unittest.mock import MagicMock, patch

from kubernetes.client import V1Node, V1ObjectMeta
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from domainmanager.engine import NodeStateCache
from domainmanager.events import (
    KubernetesNodeSource,
    NodeAdded,
    NodeRemoved,
    NodeSnapshot,
    NodeUpdated,
    dispatch,
    node_event_from_watch,
    snapshot_from_node,
)
from domainmanager.providers import DummyDomainHandler
from domainmanager.resolver import ProviderResolver


def make_node(name: str, hostname: str = "", annotations=None, version: str = "1") -> V1Node:
    labels = {"domainmanager.example.org": "yes"}
    if hostname:
        labels["kubernetes.io/hostname"] = hostname
    return V1Node(
        metadata=V1ObjectMeta(
            name=name,
            labels=labels,
            annotations=annotations or {},
            resource_version=version,
        )
    )


def make_cache(handler: DummyDomainHandler) -> NodeStateCache:
    hosts = {"node-1.local": ["10.0.0.1"], "node-2.local": ["10.0.0.2"]}
    return NodeStateCache(ProviderResolver([handler]), address_resolver=lambda h: hosts.get(h, []))


# =============================================================================
# Translation
# =============================================================================


def test_snapshot_from_v1_node() -> None:
    node = make_node("node-1", "node-1.local", {"app.example.com/domainmanager": "true"})

    snapshot = snapshot_from_node(node)

    assert snapshot == NodeSnapshot(
        name="node-1",
        hostname="node-1.local",
        annotations={"app.example.com/domainmanager": "true"},
    )


def test_snapshot_from_dict_payload() -> None:
    obj = {
        "metadata": {
            "name": "node-1",
            "labels": {"kubernetes.io/hostname": "node-1.local"},
            "annotations": None,
        }
    }

    snapshot = snapshot_from_node(obj)

    assert snapshot.hostname == "node-1.local"
    assert snapshot.annotations == {}


def test_snapshot_without_hostname_label_is_rejected(caplog) -> None:
    assert snapshot_from_node(make_node("node-1")) is None
    assert "has no 'kubernetes.io/hostname' label" in caplog.text


def test_watch_event_types() -> None:
    node = make_node("node-1", "node-1.local")

    assert isinstance(node_event_from_watch("ADDED", node), NodeAdded)
    assert isinstance(node_event_from_watch("MODIFIED", node), NodeUpdated)
    assert isinstance(node_event_from_watch("DELETED", node), NodeRemoved)
    assert node_event_from_watch("BOOKMARK", node) is None


# =============================================================================
# Dispatch
# =============================================================================


def test_dispatch_lifecycle() -> None:
    handler = DummyDomainHandler()
    cache = make_cache(handler)
    annotated = NodeSnapshot("node-1", "node-1.local", {"app.example.com/domainmanager": "true"})

    dispatch(NodeAdded(annotated), cache)
    assert [r.value for r in handler.records["app.example.com"]] == ["10.0.0.1"]

    dispatch(NodeUpdated(NodeSnapshot("node-1", "node-1.local", {})), cache)
    assert "app.example.com" not in handler.records

    dispatch(NodeRemoved(annotated), cache)
    assert "node-1" not in cache


def test_dispatch_update_for_unknown_node_creates_it() -> None:
    handler = DummyDomainHandler()
    cache = make_cache(handler)

    dispatch(
        NodeUpdated(NodeSnapshot("node-2", "node-2.local", {"app.example.com/domainmanager": "true"})),
        cache,
    )

    assert "node-2" in cache
    assert [r.value for r in handler.records["app.example.com"]] == ["10.0.0.2"]


# =============================================================================
# Kubernetes Source
# =============================================================================


def make_node_list(nodes: List[V1Node], version: str) -> MagicMock:
    node_list = MagicMock()
    node_list.metadata.resource_version = version
    node_list.items = nodes
    return node_list


def collect(source: KubernetesNodeSource, count: int) -> list:
    events = []
    for event in source.events():
        events.append(event)
        if len(events) == count:
            source.stop.set()
    return events


def test_source_lists_then_watches() -> None:
    api = MagicMock()
    api.list_node.return_value = make_node_list([make_node("node-1", "node-1.local")], "100")
    source = KubernetesNodeSource("domainmanager.example.org", api=api, timeout_seconds=5)

    with patch("domainmanager.events.watch.Watch") as watch_cls:
        watch_cls.return_value.stream.return_value = iter(
            [{"type": "MODIFIED", "object": make_node("node-1", "node-1.local", version="101")}]
        )

        events = collect(source, 2)

    assert [type(e) for e in events] == [NodeAdded, NodeUpdated]
    api.list_node.assert_called_once_with(label_selector="domainmanager.example.org=yes")
    watch_cls.return_value.stream.assert_called_once_with(
        api.list_node,
        label_selector="domainmanager.example.org=yes",
        resource_version="100",
        timeout_seconds=5,
    )


def test_source_relists_after_error_and_reports_vanished_nodes() -> None:
    api = MagicMock()
    api.list_node.side_effect = [
        make_node_list([make_node("node-1", "node-1.local"), make_node("node-2", "node-2.local")], "100"),
        make_node_list([make_node("node-1", "node-1.local")], "200"),
    ]
    source = KubernetesNodeSource("domainmanager.example.org", api=api)

    with patch("domainmanager.events.watch.Watch") as watch_cls:
        watch_cls.return_value.stream.return_value = iter(
            [{"type": "ERROR", "object": {}, "raw_object": {"code": 500}}]
        )

        events = collect(source, 4)

    assert [type(e) for e in events] == [NodeAdded, NodeAdded, NodeAdded, NodeRemoved]
    assert events[-1].node.name == "node-2"


def test_source_relists_when_resource_version_expired() -> None:
    api = MagicMock()
    api.list_node.return_value = make_node_list([make_node("node-1", "node-1.local")], "100")
    source = KubernetesNodeSource("domainmanager.example.org", api=api)

    with patch("domainmanager.events.watch.Watch") as watch_cls:
        watch_cls.return_value.stream.side_effect = ApiException(status=410, reason="Gone")

        events = collect(source, 2)

    assert [e.node.name for e in events] == ["node-1", "node-1"]
    assert api.list_node.call_count == 2


def test_source_relists_after_server_error(caplog) -> None:
    api = MagicMock()
    api.list_node.return_value = make_node_list([make_node("node-1", "node-1.local")], "100")
    source = KubernetesNodeSource("domainmanager.example.org", api=api, retry_delay=0)

    with patch("domainmanager.events.watch.Watch") as watch_cls:
        watch_cls.return_value.stream.side_effect = ApiException(status=500, reason="boom")

        events = collect(source, 2)

    assert [e.node.name for e in events] == ["node-1", "node-1"]
    assert api.list_node.call_count == 2
    assert "Watch failed with status 500" in caplog.text


def test_source_relists_after_dropped_connection(caplog) -> None:
    api = MagicMock()
    api.list_node.return_value = make_node_list([make_node("node-1", "node-1.local")], "100")
    source = KubernetesNodeSource("domainmanager.example.org", api=api, retry_delay=0)

    with patch("domainmanager.events.watch.Watch") as watch_cls:
        watch_cls.return_value.stream.side_effect = ProtocolError("Connection broken")

        events = collect(source, 2)

    assert [e.node.name for e in events] == ["node-1", "node-1"]
    assert "Watch connection failed" in caplog.text


def test_source_retries_failed_list(caplog) -> None:
    api = MagicMock()
    api.list_node.side_effect = [
        ApiException(status=503, reason="Unavailable"),
        make_node_list([make_node("node-1", "node-1.local")], "100"),
    ]
    source = KubernetesNodeSource("domainmanager.example.org", api=api, retry_delay=0)

    events = collect(source, 1)

    assert [e.node.name for e in events] == ["node-1"]
    assert api.list_node.call_count == 2
    assert "Listing nodes failed" in caplog.text

"""Look up Kubernetes metadata for IP addresses.

Cluster objects are plain mappings in the Kubernetes JSON layout
(``metadata``, ``spec``, ``status``). Informers are objects that index those
mappings by IP address and expose ``by_index(index_name, value)``. The
replica set store exposes ``get_by_key("namespace/name")``.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

_log = logging.getLogger(__name__)

INDEX_IP = "byIP"
TYPE_NODE = "Node"
TYPE_POD = "Pod"
TYPE_SERVICE = "Service"
CLUSTER_IP_NONE = "None"


class _IpIndex(Protocol):
    def by_index(self, index_name: str, value: str) -> Sequence[Mapping[str, Any]]:
        ...


class _ObjectStore(Protocol):
    def get_by_key(self, key: str) -> Mapping[str, Any] | None:
        ...


@dataclass(frozen=True)
class Owner:
    """The controller that owns a cluster object."""

    type: str = ""
    name: str = ""


@dataclass
class Info:
    """Kubernetes metadata found for one IP address."""

    type: str
    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    owner_references: list[Mapping[str, Any]] = field(default_factory=list)
    owner: Owner = field(default_factory=Owner)
    host_ip: str = ""


def _section(obj: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    return obj.get(name) or {}


def _ip_text(text: str) -> str | None:
    if "%" in text:
        return None
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def node_ips(node: Mapping[str, Any]) -> list[str]:
    """Return the valid addresses of a node, in canonical form."""
    addresses = _section(node, "status").get("addresses") or []
    ips = (_ip_text(str(address.get("address", ""))) for address in addresses)
    return [ip for ip in ips if ip is not None]


def pod_ips(pod: Mapping[str, Any]) -> list[str]:
    """Return the pod's IPs, ignoring those shared with its host."""
    status = _section(pod, "status")
    host_ip = status.get("hostIP", "")
    return [
        pod_ip.get("ip", "")
        for pod_ip in status.get("podIPs") or []
        if pod_ip.get("ip", "") != host_ip
    ]


def service_ips(service: Mapping[str, Any]) -> list[str]:
    """Return the cluster IPs of a service; headless services have none."""
    spec = _section(service, "spec")
    if spec.get("clusterIP") == CLUSTER_IP_NONE:
        return []
    return list(spec.get("clusterIPs") or [])


def _info_from_object(obj_type: str, obj: Mapping[str, Any]) -> Info:
    metadata = _section(obj, "metadata")
    info = Info(
        type=obj_type,
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        labels=dict(metadata.get("labels") or {}),
    )
    if obj_type == TYPE_POD:
        info.owner_references = list(metadata.get("ownerReferences") or [])
        info.host_ip = _section(obj, "status").get("hostIP", "")
    elif obj_type not in (TYPE_NODE, TYPE_SERVICE):
        raise ValueError(f"unknown kubernetes object type {obj_type!r}")
    return info


class KubeData:
    """IP-indexed views of nodes, pods and services."""

    def __init__(
        self,
        ip_informers: Mapping[str, _IpIndex] | None = None,
        replica_set_informer: _ObjectStore | None = None,
    ) -> None:
        self.ip_informers: dict[str, _IpIndex] = dict(ip_informers or {})
        self.replica_set_informer = replica_set_informer

    def get_info(self, ip: str) -> Info:
        """Return metadata of the object owning ``ip``; raise LookupError if none."""
        for obj_type, informer in self.ip_informers.items():
            objs = informer.by_index(INDEX_IP, ip)
            if not objs:
                continue
            info = _info_from_object(obj_type, objs[0])
            info.owner = self._owner(info)
            return info
        raise LookupError("can't find ip")

    def _owner(self, info: Info) -> Owner:
        if info.owner_references:
            reference = info.owner_references[0]
            kind = reference.get("kind", "")
            if kind != "ReplicaSet":
                return Owner(type=kind, name=reference.get("name", ""))
            if self.replica_set_informer is not None:
                key = f"{info.namespace}/{reference.get('name', '')}"
                replica_set = self.replica_set_informer.get_by_key(key)
                if replica_set is not None:
                    references = _section(replica_set, "metadata").get("ownerReferences") or []
                    if references:
                        return Owner(
                            type=references[0].get("kind", ""),
                            name=references[0].get("name", ""),
                        )
        return Owner(type=info.type, name=info.name)
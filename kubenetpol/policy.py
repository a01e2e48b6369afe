"""Evaluation of network policy objects into the rules enforced on the node."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from kubenetpol.ipsets import OPTION_NO_MATCH, OPTION_TIMEOUT
from kubenetpol.objects import (
    ClusterState,
    LabelSelector,
    NetworkPolicy,
    NetworkPolicyPeer,
    NetworkPolicyPort,
    Pod,
    PolicyType,
)
from kubenetpol.utils import is_netpol_actionable


class PolicyKind(str, Enum):
    """Which traffic directions a policy governs."""

    INGRESS = "ingress"
    EGRESS = "egress"
    BOTH = "both"


@dataclass
class PodInfo:
    """A pod as seen by policy enforcement."""

    ip: str
    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ProtocolAndPort:
    """A protocol with a destination port and optional end of a port range."""

    protocol: str = ""
    port: str = ""
    endport: str = ""


@dataclass
class EndPoints(ProtocolAndPort):
    """Pod IPs serving a resolved named port."""

    ips: list[str] = field(default_factory=list)


# named port -> protocol -> numeric port -> endpoints
NamedPortMap = dict[str, dict[str, dict[str, EndPoints]]]


@dataclass
class IngressRule:
    """An ingress rule of a policy, with its peers resolved."""

    match_all_ports: bool = False
    ports: list[ProtocolAndPort] = field(default_factory=list)
    named_ports: list[EndPoints] = field(default_factory=list)
    match_all_source: bool = False
    src_pods: list[PodInfo] = field(default_factory=list)
    src_ip_blocks: list[list[str]] = field(default_factory=list)


@dataclass
class EgressRule:
    """An egress rule of a policy, with its peers resolved."""

    match_all_ports: bool = False
    ports: list[ProtocolAndPort] = field(default_factory=list)
    named_ports: list[EndPoints] = field(default_factory=list)
    match_all_destinations: bool = False
    dst_pods: list[PodInfo] = field(default_factory=list)
    dst_ip_blocks: list[list[str]] = field(default_factory=list)


@dataclass
class NetworkPolicyInfo:
    """A network policy with its target pods and rules resolved.

    ``ingress_rules``/``egress_rules`` are None when the policy has no such field.
    """

    name: str
    namespace: str
    pod_selector: LabelSelector = field(default_factory=LabelSelector)
    policy_type: PolicyKind = PolicyKind.INGRESS
    target_pods: dict[str, PodInfo] = field(default_factory=dict)
    ingress_rules: Optional[list[IngressRule]] = None
    egress_rules: Optional[list[EgressRule]] = None


def _pod_info(pod: Pod) -> PodInfo:
    return PodInfo(ip=pod.pod_ip, name=pod.name, namespace=pod.namespace, labels=pod.labels)


def _policy_kind(policy_types: Iterable) -> PolicyKind:
    types = list(policy_types)
    ingress = PolicyType.INGRESS in types
    egress = PolicyType.EGRESS in types
    if ingress and egress:
        return PolicyKind.BOTH
    if egress:
        return PolicyKind.EGRESS
    return PolicyKind.INGRESS


def _actionable_pod_infos(pods: Iterable[Pod]) -> list[PodInfo]:
    return [_pod_info(pod) for pod in pods if is_netpol_actionable(pod)]


def _build_ingress_rule(cluster, policy, spec_rule, named_ports: NamedPortMap) -> IngressRule:
    rule = IngressRule()
    if not spec_rule.from_:
        rule.match_all_source = True
    else:
        for peer in spec_rule.from_:
            rule.src_pods.extend(_actionable_pod_infos(eval_pod_peer(cluster, policy, peer)))
            rule.src_ip_blocks.extend(eval_ip_block_peer(peer))
    if not spec_rule.ports:
        rule.match_all_ports = True
    else:
        rule.ports, rule.named_ports = process_network_policy_ports(spec_rule.ports, named_ports)
    return rule


def _build_egress_rule(cluster, policy, spec_rule) -> EgressRule:
    rule = EgressRule()
    named_ports: NamedPortMap = {}
    if not spec_rule.to:
        rule.match_all_destinations = True
        # With no destinations but named ports, resolve the names against the
        # pods of the policy's own namespace.
        if policy_rule_ports_has_named_port(spec_rule.ports):
            for pod in cluster.list_pods_by_namespace_and_labels(
                policy.namespace, LabelSelector()
            ):
                if is_netpol_actionable(pod):
                    grab_named_port_from_pod(pod, named_ports)
    else:
        for peer in spec_rule.to:
            for pod in eval_pod_peer(cluster, policy, peer):
                if not is_netpol_actionable(pod):
                    continue
                rule.dst_pods.append(_pod_info(pod))
                grab_named_port_from_pod(pod, named_ports)
            rule.dst_ip_blocks.extend(eval_ip_block_peer(peer))
    if not spec_rule.ports:
        rule.match_all_ports = True
    else:
        rule.ports, rule.named_ports = process_network_policy_ports(spec_rule.ports, named_ports)
    return rule


def _build_policy_info(cluster: ClusterState, policy: NetworkPolicy) -> NetworkPolicyInfo:
    info = NetworkPolicyInfo(
        name=policy.name,
        namespace=policy.namespace,
        pod_selector=policy.pod_selector,
        policy_type=_policy_kind(policy.policy_types),
    )
    ingress_named_ports: NamedPortMap = {}
    for pod in cluster.list_pods_by_namespace_and_labels(policy.namespace, policy.pod_selector):
        if not is_netpol_actionable(pod):
            continue
        info.target_pods[pod.pod_ip] = _pod_info(pod)
        grab_named_port_from_pod(pod, ingress_named_ports)

    if policy.ingress is not None:
        info.ingress_rules = [
            _build_ingress_rule(cluster, policy, spec_rule, ingress_named_ports)
            for spec_rule in policy.ingress
        ]
    if policy.egress is not None:
        info.egress_rules = [
            _build_egress_rule(cluster, policy, spec_rule) for spec_rule in policy.egress
        ]
    return info


def build_network_policies_info(cluster: ClusterState) -> list[NetworkPolicyInfo]:
    """Resolve every stored network policy against the current pods and namespaces."""
    infos = []
    for obj in cluster.network_policies:
        if not isinstance(obj, NetworkPolicy):
            raise TypeError("failed to convert")
        infos.append(_build_policy_info(cluster, obj))
    return infos


def eval_pod_peer(
    cluster: ClusterState, policy: NetworkPolicy, peer: NetworkPolicyPeer
) -> list[Pod]:
    """Pods selected by the namespace and/or pod selector of ``peer``."""
    if peer.namespace_selector is not None:
        pod_selector = peer.pod_selector if peer.pod_selector is not None else LabelSelector()
        return [
            pod
            for namespace in cluster.list_namespaces_by_labels(peer.namespace_selector)
            for pod in cluster.list_pods_by_namespace_and_labels(namespace.name, pod_selector)
        ]
    if peer.pod_selector is not None:
        return cluster.list_pods_by_namespace_and_labels(policy.namespace, peer.pod_selector)
    return []


def _ipset_cidr_entries(cidr: str, *extra: str) -> list[list[str]]:
    # ipset cannot hold a /0 network, so it is split into two halves.
    if cidr.endswith("/0"):
        return [
            ["0.0.0.0/1", OPTION_TIMEOUT, "0", *extra],
            ["128.0.0.0/1", OPTION_TIMEOUT, "0", *extra],
        ]
    return [[cidr, OPTION_TIMEOUT, "0", *extra]]


def eval_ip_block_peer(peer: NetworkPolicyPeer) -> list[list[str]]:
    """Ipset entries for an IP-block-only peer; excepted ranges are marked nomatch."""
    if peer.pod_selector is not None or peer.namespace_selector is not None or peer.ip_block is None:
        return []
    entries = _ipset_cidr_entries(peer.ip_block.cidr)
    for excepted in peer.ip_block.except_:
        entries.extend(_ipset_cidr_entries(excepted, OPTION_NO_MATCH))
    return entries


def process_network_policy_ports(
    np_ports: Iterable[NetworkPolicyPort], named_ports: NamedPortMap
) -> tuple[list[ProtocolAndPort], list[EndPoints]]:
    """Split policy ports into numeric ports and resolved named-port endpoints."""
    numeric: list[ProtocolAndPort] = []
    resolved: list[EndPoints] = []
    for np_port in np_ports:
        protocol = str(np_port.protocol) if np_port.protocol is not None else ""
        port = np_port.port
        if port is None:
            numeric.append(ProtocolAndPort(protocol=protocol, port=""))
        elif isinstance(port, int):
            endport = ""
            if np_port.end_port is not None and np_port.end_port >= port:
                endport = str(np_port.end_port)
            numeric.append(ProtocolAndPort(protocol=protocol, port=str(port), endport=endport))
        else:
            by_number = named_ports.get(port, {}).get(protocol, {})
            resolved.extend(
                EndPoints(protocol=eps.protocol, port=eps.port, endport=eps.endport, ips=list(eps.ips))
                for eps in by_number.values()
            )
    return numeric, resolved


def grab_named_port_from_pod(pod: Optional[Pod], named_ports: Optional[NamedPortMap]) -> None:
    """Record the pod's IP under each container port it exposes."""
    if pod is None or named_ports is None:
        return
    for container in pod.containers:
        for port in container.ports:
            protocol = str(port.protocol)
            number = str(port.container_port)
            by_number = named_ports.setdefault(port.name, {}).setdefault(protocol, {})
            eps = by_number.get(number)
            if eps is None:
                by_number[number] = EndPoints(protocol=protocol, port=number, ips=[pod.pod_ip])
            else:
                eps.ips.append(pod.pod_ip)


def policy_rule_ports_has_named_port(np_ports: Iterable[NetworkPolicyPort]) -> bool:
    """True when any of the ports is given by name."""
    return any(isinstance(np_port.port, str) for np_port in np_ports)
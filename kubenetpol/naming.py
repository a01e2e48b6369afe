"""Deterministic names for network policy chains and ipsets."""

from __future__ import annotations

import base64
import hashlib

KUBE_NETWORK_POLICY_CHAIN_PREFIX = "KUBE-NWPLCY-"
KUBE_SOURCE_IPSET_PREFIX = "KUBE-SRC-"
KUBE_DESTINATION_IPSET_PREFIX = "KUBE-DST-"

_SUFFIX_LENGTH = 16


def _digest16(text: str) -> str:
    """First 16 characters of the base32 encoding of the SHA-256 of ``text``."""
    digest = hashlib.sha256(text.encode()).digest()
    return base64.b32encode(digest).decode("ascii")[:_SUFFIX_LENGTH]


def network_policy_chain_name(namespace: str, policy_name: str, version: str) -> str:
    """Name of the iptables chain holding the rules of one policy at one sync version."""
    return KUBE_NETWORK_POLICY_CHAIN_PREFIX + _digest16(namespace + policy_name + version)


def policy_source_pod_ipset_name(namespace: str, policy_name: str) -> str:
    """Ipset of the pods a policy selects, matched as traffic sources."""
    return KUBE_SOURCE_IPSET_PREFIX + _digest16(namespace + policy_name)


def policy_destination_pod_ipset_name(namespace: str, policy_name: str) -> str:
    """Ipset of the pods a policy selects, matched as traffic destinations."""
    return KUBE_DESTINATION_IPSET_PREFIX + _digest16(namespace + policy_name)


def policy_indexed_source_pod_ipset_name(
    namespace: str, policy_name: str, ingress_rule_no: int
) -> str:
    """Ipset of the peer pods of one ingress rule."""
    return KUBE_SOURCE_IPSET_PREFIX + _digest16(
        f"{namespace}{policy_name}ingressrule{ingress_rule_no}pod"
    )


def policy_indexed_destination_pod_ipset_name(
    namespace: str, policy_name: str, egress_rule_no: int
) -> str:
    """Ipset of the peer pods of one egress rule."""
    return KUBE_DESTINATION_IPSET_PREFIX + _digest16(
        f"{namespace}{policy_name}egressrule{egress_rule_no}pod"
    )


def policy_indexed_source_ipblock_ipset_name(
    namespace: str, policy_name: str, ingress_rule_no: int
) -> str:
    """Ipset of the IP blocks of one ingress rule."""
    return KUBE_SOURCE_IPSET_PREFIX + _digest16(
        f"{namespace}{policy_name}ingressrule{ingress_rule_no}ipblock"
    )


def policy_indexed_destination_ipblock_ipset_name(
    namespace: str, policy_name: str, egress_rule_no: int
) -> str:
    """Ipset of the IP blocks of one egress rule."""
    return KUBE_DESTINATION_IPSET_PREFIX + _digest16(
        f"{namespace}{policy_name}egressrule{egress_rule_no}ipblock"
    )


def policy_indexed_ingress_named_port_ipset_name(
    namespace: str, policy_name: str, ingress_rule_no: int, named_port_no: int
) -> str:
    """Ipset of the endpoints resolved for one named port of one ingress rule."""
    return KUBE_DESTINATION_IPSET_PREFIX + _digest16(
        f"{namespace}{policy_name}ingressrule{ingress_rule_no}{named_port_no}namedport"
    )


def policy_indexed_egress_named_port_ipset_name(
    namespace: str, policy_name: str, egress_rule_no: int, named_port_no: int
) -> str:
    """Ipset of the endpoints resolved for one named port of one egress rule."""
    return KUBE_DESTINATION_IPSET_PREFIX + _digest16(
        f"{namespace}{policy_name}egressrule{egress_rule_no}{named_port_no}namedport"
    )
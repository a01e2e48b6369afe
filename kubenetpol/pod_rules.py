"""Per-pod firewall chains that route pod traffic through the applicable policies."""

from __future__ import annotations

import base64
import hashlib
import io
from typing import Iterable, Mapping, Optional, Union

from kubenetpol.naming import network_policy_chain_name
from kubenetpol.objects import ClusterState
from kubenetpol.policy import NetworkPolicyInfo, PodInfo, PolicyKind
from kubenetpol.utils import is_netpol_actionable

KUBE_POD_FIREWALL_CHAIN_PREFIX = "KUBE-POD-FW-"
KUBE_INPUT_CHAIN_NAME = "KUBE-ROUTER-INPUT"
KUBE_FORWARD_CHAIN_NAME = "KUBE-ROUTER-FORWARD"
KUBE_OUTPUT_CHAIN_NAME = "KUBE-ROUTER-OUTPUT"
KUBE_DEFAULT_NETPOL_CHAIN = "KUBE-NWPLCY-DEFAULT"

DEFAULT_CHAINS = {
    "INPUT": KUBE_INPUT_CHAIN_NAME,
    "FORWARD": KUBE_FORWARD_CHAIN_NAME,
    "OUTPUT": KUBE_OUTPUT_CHAIN_NAME,
}


def pod_firewall_chain_name(namespace: str, pod_name: str, version: str) -> str:
    """Name of the firewall chain of one pod at one sync version."""
    digest = hashlib.sha256((namespace + pod_name + version).encode()).digest()
    return KUBE_POD_FIREWALL_CHAIN_PREFIX + base64.b32encode(digest).decode("ascii")[:16]


def local_pods(cluster: ClusterState, node_ip: str) -> dict[str, PodInfo]:
    """Actionable pods running on the node with ``node_ip``, keyed by pod IP."""
    return {
        pod.pod_ip: PodInfo(ip=pod.pod_ip, name=pod.name, namespace=pod.namespace, labels=pod.labels)
        for pod in cluster.pods
        if pod.host_ip == node_ip and is_netpol_actionable(pod)
    }


class PodFirewallWriter:
    """Appends pod firewall chains and their jump rules to an iptables-restore buffer."""

    def __init__(self, rules: Optional[io.StringIO] = None) -> None:
        self.rules = rules if rules is not None else io.StringIO()

    def _write(self, args: Iterable[str]) -> None:
        self.rules.write(" ".join(args))

    def sync_pod_firewall_chains(
        self,
        policies: Iterable[NetworkPolicyInfo],
        pods: Union[Mapping[str, PodInfo], Iterable[PodInfo]],
        version: str,
    ) -> set[str]:
        """Write a firewall chain for each local pod; return the chain names."""
        policies = list(policies)
        pod_list = pods.values() if isinstance(pods, Mapping) else pods
        active: set[str] = set()
        for pod in pod_list:
            chain = pod_firewall_chain_name(pod.namespace, pod.name, version)
            self.rules.write(f":{chain}\n")
            active.add(chain)
            self.setup_pod_netpol_rules(pod, chain, policies, version)
            self.intercept_pod_inbound_traffic(pod, chain)
            self.intercept_pod_outbound_traffic(pod, chain)
            self.drop_unmarked_traffic_rules(pod.name, pod.namespace, chain)
            comment = '"set mark to ACCEPT traffic that comply to network policies"'
            self._write(
                ["-A", chain, "-m", "comment", "--comment", comment,
                 "-j", "MARK", "--set-mark", "0x20000/0x20000", "\n"]
            )
        return active

    def setup_pod_netpol_rules(
        self,
        pod: PodInfo,
        pod_fw_chain_name: str,
        policies: Iterable[NetworkPolicyInfo],
        version: str,
    ) -> None:
        """Write jumps from the pod chain to its policies, defaults and stateful rules."""
        has_ingress = has_egress = False
        for policy in policies:
            if pod.ip not in policy.target_pods:
                continue
            comment = f'"run through nw policy {policy.name}"'
            policy_chain = network_policy_chain_name(policy.namespace, policy.name, version)
            if policy.policy_type == PolicyKind.BOTH:
                has_ingress = has_egress = True
                match: list[str] = []
            elif policy.policy_type == PolicyKind.INGRESS:
                has_ingress = True
                match = ["-d", pod.ip]
            else:
                has_egress = True
                match = ["-s", pod.ip]
            self._write(
                ["-I", pod_fw_chain_name, "1", *match, "-m", "comment", "--comment", comment,
                 "-j", policy_chain, "\n"]
            )

        if not has_ingress:
            comment = '"run through default ingress network policy  chain"'
            self._write(
                ["-I", pod_fw_chain_name, "1", "-d", pod.ip, "-m", "comment", "--comment", comment,
                 "-j", KUBE_DEFAULT_NETPOL_CHAIN, "\n"]
            )
        if not has_egress:
            comment = '"run through default egress network policy  chain"'
            self._write(
                ["-I", pod_fw_chain_name, "1", "-s", pod.ip, "-m", "comment", "--comment", comment,
                 "-j", KUBE_DEFAULT_NETPOL_CHAIN, "\n"]
            )

        comment = "\"rule to permit the traffic to pods when source is the pod's local node\""
        self._write(
            ["-I", pod_fw_chain_name, "1", "-m", "comment", "--comment", comment,
             "-m", "addrtype", "--src-type", "LOCAL", "-d", pod.ip, "-j", "ACCEPT", "\n"]
        )
        # INVALID packets are skipped by NAT, so they must be dropped to avoid leaks.
        comment = '"rule to drop invalid state for pod"'
        self._write(
            ["-I", pod_fw_chain_name, "1", "-m", "comment", "--comment", comment,
             "-m", "conntrack", "--ctstate", "INVALID", "-j", "DROP", "\n"]
        )
        comment = '"rule for stateful firewall for pod"'
        self._write(
            ["-I", pod_fw_chain_name, "1", "-m", "comment", "--comment", comment,
             "-m", "conntrack", "--ctstate", "RELATED,ESTABLISHED", "-j", "ACCEPT", "\n"]
        )

    def intercept_pod_inbound_traffic(self, pod: PodInfo, pod_fw_chain_name: str) -> None:
        """Jump traffic destined to the pod into its firewall chain."""
        comment = (
            f'"rule to jump traffic destined to POD name:{pod.name} namespace: {pod.namespace}'
            f' to chain {pod_fw_chain_name}"'
        )
        for chain in (KUBE_FORWARD_CHAIN_NAME, KUBE_OUTPUT_CHAIN_NAME):
            self._write(
                ["-A", chain, "-m", "comment", "--comment", comment, "-d", pod.ip,
                 "-j", pod_fw_chain_name + "\n"]
            )
        self._write(
            ["-A", KUBE_FORWARD_CHAIN_NAME, "-m", "physdev", "--physdev-is-bridged",
             "-m", "comment", "--comment", comment, "-d", pod.ip,
             "-j", pod_fw_chain_name, "\n"]
        )

    def intercept_pod_outbound_traffic(self, pod: PodInfo, pod_fw_chain_name: str) -> None:
        """Jump traffic leaving the pod into its firewall chain."""
        comment = (
            f'"rule to jump traffic from POD name:{pod.name} namespace: {pod.namespace}'
            f' to chain {pod_fw_chain_name}"'
        )
        for chain in DEFAULT_CHAINS.values():
            self._write(
                ["-A", chain, "-m", "comment", "--comment", comment, "-s", pod.ip,
                 "-j", pod_fw_chain_name, "\n"]
            )
        self._write(
            ["-A", KUBE_FORWARD_CHAIN_NAME, "-m", "physdev", "--physdev-is-bridged",
             "-m", "comment", "--comment", comment, "-s", pod.ip,
             "-j", pod_fw_chain_name, "\n"]
        )

    def drop_unmarked_traffic_rules(
        self, pod_name: str, pod_namespace: str, pod_fw_chain_name: str
    ) -> None:
        """Log, reject and unmark traffic that no policy accepted; written once per chain."""
        comment = f'"rule to log dropped traffic POD name:{pod_name} namespace: {pod_namespace}"'
        log_rule = " ".join(
            ["-A", pod_fw_chain_name, "-m", "comment", "--comment", comment,
             "-m", "mark", "!", "--mark", "0x10000/0x10000", "-j", "NFLOG",
             "--nflog-group", "100", "-m", "limit", "--limit", "10/minute",
             "--limit-burst", "10", "\n"]
        )
        if log_rule in self.rules.getvalue():
            return
        self.rules.write(log_rule)

        comment = (
            f'"rule to REJECT traffic destined for POD name:{pod_name} namespace: {pod_namespace}"'
        )
        self._write(
            ["-A", pod_fw_chain_name, "-m", "comment", "--comment", comment,
             "-m", "mark", "!", "--mark", "0x10000/0x10000", "-j", "REJECT", "\n"]
        )
        self._write(["-A", pod_fw_chain_name, "-j", "MARK", "--set-mark", "0/0x10000", "\n"])
"""Writes the iptables chains and ipsets that enforce each network policy."""

from __future__ import annotations

import io
import logging
import threading
import time
from typing import Iterable, Optional

from kubenetpol.ipsets import TYPE_HASH_IP, TYPE_HASH_NET, IPSetRegistry
from kubenetpol.naming import (
    network_policy_chain_name,
    policy_destination_pod_ipset_name,
    policy_indexed_destination_ipblock_ipset_name,
    policy_indexed_destination_pod_ipset_name,
    policy_indexed_egress_named_port_ipset_name,
    policy_indexed_ingress_named_port_ipset_name,
    policy_indexed_source_ipblock_ipset_name,
    policy_indexed_source_pod_ipset_name,
    policy_source_pod_ipset_name,
)
from kubenetpol.ipsets import OPTION_TIMEOUT
from kubenetpol.policy import NetworkPolicyInfo, PolicyKind, ProtocolAndPort
from kubenetpol.utils import get_ips_from_pods

log = logging.getLogger(__name__)

_MARK = "0x10000/0x10000"


def _comment(text: str, policy: NetworkPolicyInfo) -> str:
    return f"rule to ACCEPT traffic {text} {policy.name} namespace {policy.namespace}"


class PolicyChainWriter:
    """Appends policy chain rules to an iptables-restore buffer and fills ipsets.

    ``rules`` is the filter table text being assembled; ``ipsets`` holds the
    host's ipsets in memory until they are restored in one go.
    """

    def __init__(
        self,
        ipsets: Optional[IPSetRegistry] = None,
        rules: Optional[io.StringIO] = None,
        ipset_lock: Optional[threading.Lock] = None,
    ) -> None:
        self.ipsets = ipsets if ipsets is not None else IPSetRegistry()
        self.rules = rules if rules is not None else io.StringIO()
        self._ipset_lock = ipset_lock if ipset_lock is not None else threading.Lock()

    def _write(self, args: Iterable[str]) -> None:
        self.rules.write(" ".join(args))

    def sync_network_policy_chains(
        self, policies: Iterable[NetworkPolicyInfo], version: str
    ) -> tuple[set[str], set[str]]:
        """Write one chain per policy and its ipsets; return active chains and ipsets."""
        start = time.monotonic()
        try:
            with self._ipset_lock:
                self.ipsets.save()
                active_chains: set[str] = set()
                active_ipsets: set[str] = set()
                for policy in policies:
                    chain = network_policy_chain_name(policy.namespace, policy.name, version)
                    self.rules.write(f":{chain}\n")
                    active_chains.add(chain)
                    current_pod_ips = list(policy.target_pods)

                    if policy.policy_type in (PolicyKind.BOTH, PolicyKind.INGRESS):
                        dest_set = policy_destination_pod_ipset_name(policy.namespace, policy.name)
                        self.create_generic_hash_ipset(dest_set, TYPE_HASH_IP, current_pod_ips)
                        self.process_ingress_rules(policy, dest_set, active_ipsets, version)
                        active_ipsets.add(dest_set)
                    if policy.policy_type in (PolicyKind.BOTH, PolicyKind.EGRESS):
                        src_set = policy_source_pod_ipset_name(policy.namespace, policy.name)
                        self.create_generic_hash_ipset(src_set, TYPE_HASH_IP, current_pod_ips)
                        self.process_egress_rules(policy, src_set, active_ipsets, version)
                        active_ipsets.add(src_set)

                try:
                    self.ipsets.restore()
                except RuntimeError as exc:
                    raise RuntimeError(f"failed to perform ipset restore: {exc}") from exc
        finally:
            log.debug("Syncing network policy chains took %.3fs", time.monotonic() - start)
        log.debug("Iptables chains in the filter table are synchronized with the network policies.")
        return active_chains, active_ipsets

    def process_ingress_rules(
        self,
        policy: NetworkPolicyInfo,
        target_dest_pod_ipset_name: str,
        active_policy_ipsets: set[str],
        version: str,
    ) -> None:
        """Write the whitelist rules of the policy's ingress rules."""
        if policy.ingress_rules is None:
            return
        chain = network_policy_chain_name(policy.namespace, policy.name, version)
        pods_comment = _comment("from source pods to dest pods selected by policy name", policy)
        all_comment = _comment("from all sources to dest pods selected by policy name:", policy)
        block_comment = _comment(
            "from specified ipBlocks to dest pods selected by policy name:", policy
        )

        for rule_idx, rule in enumerate(policy.ingress_rules):
            if rule.src_pods:
                src_set = policy_indexed_source_pod_ipset_name(
                    policy.namespace, policy.name, rule_idx
                )
                self.create_policy_indexed_ipset(
                    active_policy_ipsets, src_set, TYPE_HASH_IP, get_ips_from_pods(rule.src_pods)
                )
                if rule.ports:
                    self.create_pod_with_port_policy_rule(
                        rule.ports, policy, chain, src_set, target_dest_pod_ipset_name
                    )
                for port_idx, eps in enumerate(rule.named_ports):
                    named_set = policy_indexed_ingress_named_port_ipset_name(
                        policy.namespace, policy.name, rule_idx, port_idx
                    )
                    self.create_policy_indexed_ipset(
                        active_policy_ipsets, named_set, TYPE_HASH_IP, eps.ips
                    )
                    self.append_rule_to_policy_chain(
                        chain, pods_comment, src_set, named_set, eps.protocol, eps.port, eps.endport
                    )
                if not rule.ports and not rule.named_ports:
                    self.append_rule_to_policy_chain(
                        chain, pods_comment, src_set, target_dest_pod_ipset_name, "", "", ""
                    )

            if rule.match_all_source and not rule.match_all_ports:
                for port in rule.ports:
                    self.append_rule_to_policy_chain(
                        chain, all_comment, "", target_dest_pod_ipset_name,
                        port.protocol, port.port, port.endport,
                    )
                for port_idx, eps in enumerate(rule.named_ports):
                    named_set = policy_indexed_ingress_named_port_ipset_name(
                        policy.namespace, policy.name, rule_idx, port_idx
                    )
                    self.create_policy_indexed_ipset(
                        active_policy_ipsets, named_set, TYPE_HASH_IP, eps.ips
                    )
                    self.append_rule_to_policy_chain(
                        chain, all_comment, "", named_set, eps.protocol, eps.port, eps.endport
                    )

            if rule.match_all_source and rule.match_all_ports:
                self.append_rule_to_policy_chain(
                    chain, all_comment, "", target_dest_pod_ipset_name, "", "", ""
                )

            if rule.src_ip_blocks:
                block_set = policy_indexed_source_ipblock_ipset_name(
                    policy.namespace, policy.name, rule_idx
                )
                active_policy_ipsets.add(block_set)
                self.ipsets.refresh_set(block_set, rule.src_ip_blocks, TYPE_HASH_NET)
                if not rule.match_all_ports:
                    for port in rule.ports:
                        self.append_rule_to_policy_chain(
                            chain, block_comment, block_set, target_dest_pod_ipset_name,
                            port.protocol, port.port, port.endport,
                        )
                    for port_idx, eps in enumerate(rule.named_ports):
                        named_set = policy_indexed_ingress_named_port_ipset_name(
                            policy.namespace, policy.name, rule_idx, port_idx
                        )
                        self.create_policy_indexed_ipset(
                            active_policy_ipsets, named_set, TYPE_HASH_NET, eps.ips
                        )
                        self.append_rule_to_policy_chain(
                            chain, block_comment, block_set, named_set,
                            eps.protocol, eps.port, eps.endport,
                        )
                else:
                    self.append_rule_to_policy_chain(
                        chain, block_comment, block_set, target_dest_pod_ipset_name, "", "", ""
                    )

    def process_egress_rules(
        self,
        policy: NetworkPolicyInfo,
        target_source_pod_ipset_name: str,
        active_policy_ipsets: set[str],
        version: str,
    ) -> None:
        """Write the whitelist rules of the policy's egress rules."""
        if policy.egress_rules is None:
            return
        chain = network_policy_chain_name(policy.namespace, policy.name, version)
        src = target_source_pod_ipset_name
        pods_comment = _comment("from source pods to dest pods selected by policy name", policy)
        all_comment = _comment(
            "from source pods to all destinations selected by policy name:", policy
        )
        block_comment = _comment(
            "from source pods to specified ipBlocks selected by policy name:", policy
        )

        for rule_idx, rule in enumerate(policy.egress_rules):
            if rule.dst_pods:
                dst_set = policy_indexed_destination_pod_ipset_name(
                    policy.namespace, policy.name, rule_idx
                )
                self.create_policy_indexed_ipset(
                    active_policy_ipsets, dst_set, TYPE_HASH_IP, get_ips_from_pods(rule.dst_pods)
                )
                if rule.ports:
                    self.create_pod_with_port_policy_rule(rule.ports, policy, chain, src, dst_set)
                for port_idx, eps in enumerate(rule.named_ports):
                    named_set = policy_indexed_egress_named_port_ipset_name(
                        policy.namespace, policy.name, rule_idx, port_idx
                    )
                    self.create_policy_indexed_ipset(
                        active_policy_ipsets, named_set, TYPE_HASH_IP, eps.ips
                    )
                    self.append_rule_to_policy_chain(
                        chain, pods_comment, src, named_set, eps.protocol, eps.port, eps.endport
                    )
                if not rule.ports and not rule.named_ports:
                    self.append_rule_to_policy_chain(
                        chain, pods_comment, src, dst_set, "", "", ""
                    )

            if rule.match_all_destinations and not rule.match_all_ports:
                for port in [*rule.ports, *rule.named_ports]:
                    self.append_rule_to_policy_chain(
                        chain, all_comment, src, "", port.protocol, port.port, port.endport
                    )

            if rule.match_all_destinations and rule.match_all_ports:
                self.append_rule_to_policy_chain(chain, all_comment, src, "", "", "", "")

            if rule.dst_ip_blocks:
                block_set = policy_indexed_destination_ipblock_ipset_name(
                    policy.namespace, policy.name, rule_idx
                )
                active_policy_ipsets.add(block_set)
                self.ipsets.refresh_set(block_set, rule.dst_ip_blocks, TYPE_HASH_NET)
                if not rule.match_all_ports:
                    for port in rule.ports:
                        self.append_rule_to_policy_chain(
                            chain, block_comment, src, block_set,
                            port.protocol, port.port, port.endport,
                        )
                else:
                    self.append_rule_to_policy_chain(
                        chain, block_comment, src, block_set, "", "", ""
                    )

    def append_rule_to_policy_chain(
        self,
        policy_chain_name: str,
        comment: str,
        src_ipset_name: str,
        dst_ipset_name: str,
        protocol: str,
        dport: str,
        end_dport: str,
    ) -> None:
        """Write a MARK rule and a RETURN-on-mark rule for the given match."""
        args = ["-A", policy_chain_name]
        if comment:
            args += ["-m", "comment", "--comment", f'"{comment}"']
        if src_ipset_name:
            args += ["-m", "set", "--match-set", src_ipset_name, "src"]
        if dst_ipset_name:
            args += ["-m", "set", "--match-set", dst_ipset_name, "dst"]
        if protocol:
            args += ["-p", protocol]
        if dport:
            args += ["--dport", f"{dport}:{end_dport}" if end_dport else dport]
        self._write([*args, "-j", "MARK", "--set-xmark", _MARK, "\n"])
        self._write([*args, "-m", "mark", "--mark", _MARK, "-j", "RETURN", "\n"])

    def create_generic_hash_ipset(self, ipset_name: str, hash_type: str, ips: Iterable[str]) -> None:
        """Set the entries of ``ipset_name`` to ``ips`` with no timeout."""
        entries = [[ip, OPTION_TIMEOUT, "0"] for ip in ips]
        self.ipsets.refresh_set(ipset_name, entries, hash_type)

    def create_policy_indexed_ipset(
        self, active_policy_ipsets: set[str], ipset_name: str, hash_type: str, ips: Iterable[str]
    ) -> None:
        """Create a policy ipset and record it as active."""
        active_policy_ipsets.add(ipset_name)
        self.create_generic_hash_ipset(ipset_name, hash_type, ips)

    def create_pod_with_port_policy_rule(
        self,
        ports: Iterable[ProtocolAndPort],
        policy: NetworkPolicyInfo,
        policy_chain_name: str,
        src_set_name: str,
        dst_set_name: str,
    ) -> None:
        """Write rules matching both the pod ipsets and each of the ports."""
        comment = _comment("from source pods to dest pods selected by policy name", policy)
        for port in ports:
            self.append_rule_to_policy_chain(
                policy_chain_name, comment, src_set_name, dst_set_name,
                port.protocol, port.port, port.endport,
            )
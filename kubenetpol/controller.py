"""Network policy controller: keeps iptables and ipsets in line with network policies.

Each local pod gets its own firewall chain and each network policy a chain whose
rules match source and destination pods through ipsets. Traffic to or from a pod
runs through kube-router's top level chains, the pod chain and the applicable
policy chains. It is accepted when a policy marks it and rejected otherwise.
"""

from __future__ import annotations

import base64
import hashlib
import io
import ipaddress
import logging
import os
import queue
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Union

from kubenetpol.ipsets import IPSetRegistry
from kubenetpol.iptables import Iptables, IptablesError
from kubenetpol.naming import (
    KUBE_DESTINATION_IPSET_PREFIX,
    KUBE_NETWORK_POLICY_CHAIN_PREFIX,
    KUBE_SOURCE_IPSET_PREFIX,
)
from kubenetpol.chains import PolicyChainWriter
from kubenetpol.objects import ClusterState, Namespace, NetworkPolicy, Pod, Tombstone
from kubenetpol.pod_rules import (
    DEFAULT_CHAINS,
    KUBE_DEFAULT_NETPOL_CHAIN,
    KUBE_FORWARD_CHAIN_NAME,
    KUBE_INPUT_CHAIN_NAME,
    KUBE_OUTPUT_CHAIN_NAME,
    KUBE_POD_FIREWALL_CHAIN_PREFIX,
    PodFirewallWriter,
    local_pods,
)
from kubenetpol.policy import build_network_policies_info
from kubenetpol.utils import (
    is_netpol_actionable,
    is_pod_update_netpol_relevant,
    validate_node_port_range,
)

log = logging.getLogger(__name__)

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_FILTER = "filter"
_SERVICE_VIP_POSITION = 1
_WHITELIST_TCP_NODE_PORTS_POSITION = 2
_WHITELIST_UDP_NODE_PORTS_POSITION = 3
_EXTERNAL_IP_POSITION_ADDITIVE = 4
_WORKER_POLL_SECONDS = 0.1

_EXPLICIT_ACCEPT_ARGS = [
    "-m", "comment", "--comment",
    '"explicitly ACCEPT traffic that complies with network policies"',
    "-m", "mark", "--mark", "0x20000/0x20000", "-j", "ACCEPT",
]


def add_uuid_for_rule_spec(chain: str, rule_spec: Iterable[str]) -> tuple[str, list[str]]:
    """Tag the comment of ``rule_spec`` with a hash of chain and spec.

    Returns the hash and the tagged copy of the spec.
    """
    spec = list(rule_spec)
    digest = hashlib.sha256((chain + "".join(spec)).encode()).digest()
    encoded = base64.b32encode(digest).decode("ascii")[:16]
    for idx, part in enumerate(spec[:-1]):
        if part == "--comment":
            spec[idx + 1] = f"{spec[idx + 1]} - {encoded}"
            return encoded, spec
    raise ValueError(
        f"could not find a comment in the ruleSpec string given: {' '.join(spec)}"
    )


def _parse_cidr(text: str) -> Network:
    if "/" not in text:
        raise ValueError(f"invalid CIDR address: {text}")
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError:
        raise ValueError(f"invalid CIDR address: {text}") from None


def _buffer(text: str) -> io.StringIO:
    buf = io.StringIO()
    buf.write(text)
    return buf


@dataclass
class NetworkPolicyConfig:
    """Options the network policy controller is started with."""

    cluster_ip_cidr: str = "10.96.0.0/12"
    node_port_range: str = "30000-32767"
    external_ip_cidrs: list[str] = field(default_factory=list)
    hostname_override: str = ""
    iptables_sync_period: float = 300.0
    metrics_enabled: bool = False


class NetworkPolicyController:
    """Enforces ingress and egress network policies for the pods of this node.

    ``nodes`` maps node names to their IP addresses.
    """

    def __init__(
        self,
        cluster: ClusterState,
        config: NetworkPolicyConfig,
        nodes: Mapping[str, str],
        iptables: Optional[Iptables] = None,
        ipsets: Optional[IPSetRegistry] = None,
        ipset_lock: Optional[threading.Lock] = None,
    ) -> None:
        self.cluster = cluster
        self._ipset_lock = ipset_lock if ipset_lock is not None else threading.Lock()
        self._sync_lock = threading.Lock()
        # A single pending request is enough: one sync catches up with every change.
        self._full_sync_requests: queue.Queue[None] = queue.Queue(maxsize=1)

        try:
            self.service_cluster_ip_range = _parse_cidr(config.cluster_ip_cidr)
        except ValueError as exc:
            raise ValueError(
                f"failed to get parse --service-cluster-ip-range parameter: {exc}"
            ) from None

        self.service_node_port_range = validate_node_port_range(config.node_port_range)

        self.service_external_ip_ranges: list[Network] = []
        for external in config.external_ip_cidrs:
            try:
                self.service_external_ip_ranges.append(_parse_cidr(external))
            except ValueError as exc:
                raise ValueError(
                    f"failed to get parse --service-external-ip-range parameter: "
                    f"'{external}'. Error: {exc}"
                ) from None

        self.metrics_enabled = config.metrics_enabled
        self.sync_period = config.iptables_sync_period
        self.last_sync_duration: Optional[float] = None

        node_name = (
            config.hostname_override or os.environ.get("NODE_NAME") or socket.gethostname()
        )
        if node_name not in nodes:
            raise ValueError(
                "failed to identify the node by NODE_NAME, hostname or --hostname-override"
            )
        self.node_host_name = node_name
        self.node_ip = nodes[node_name]

        self.iptables = iptables if iptables is not None else Iptables()
        self.ipsets = ipsets if ipsets is not None else IPSetRegistry()
        self.filter_table_rules = io.StringIO()

    # -- sync scheduling -------------------------------------------------

    @property
    def full_sync_pending(self) -> bool:
        """True when a full sync has been requested and not yet started."""
        return not self._full_sync_requests.empty()

    def request_full_sync(self) -> None:
        """Ask for a full sync without blocking; a pending request absorbs new ones."""
        try:
            self._full_sync_requests.put_nowait(None)
            log.debug("Full sync request queue was empty so a full sync request was sent")
        except queue.Full:
            log.debug("Full sync request queue was full, skipping...")

    def _full_sync_worker(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self._full_sync_requests.get(timeout=_WORKER_POLL_SECONDS)
            except queue.Empty:
                continue
            if stop_event.is_set():
                break
            log.debug("Received request for a full sync, processing")
            try:
                self.full_policy_sync()
            except Exception:  # keep the worker alive across failed syncs
                log.exception("Aborting sync of network policies")
        log.info("Shutting down network policies full sync worker")

    def run(self, stop_event: threading.Event) -> None:
        """Sync periodically and on request until ``stop_event`` is set."""
        log.info("Starting network policy controller")
        self.ensure_top_level_chains()
        self.ensure_default_network_policy_chain()

        worker = threading.Thread(
            target=self._full_sync_worker,
            args=(stop_event,),
            name="netpol-full-sync",
            daemon=True,
        )
        worker.start()
        while True:
            log.debug("Requesting periodic sync of iptables to reflect network policies")
            self.request_full_sync()
            if stop_event.wait(self.sync_period):
                break
        log.info("Shutting down network policies controller")
        worker.join()

    def full_policy_sync(self) -> None:
        """Bring iptables and ipsets in line with the current network policies."""
        with self._sync_lock:
            start = time.monotonic()
            version = str(time.time_ns())
            log.debug("Starting sync of iptables with version: %s", version)
            try:
                self.ensure_top_level_chains()
                self.ensure_default_network_policy_chain()
                policies = build_network_policies_info(self.cluster)

                self.filter_table_rules = _buffer(self.iptables.save(_FILTER))

                chain_writer = PolicyChainWriter(
                    self.ipsets, self.filter_table_rules, self._ipset_lock
                )
                active_policy_chains, active_policy_ipsets = (
                    chain_writer.sync_network_policy_chains(policies, version)
                )
                active_pod_fw_chains = PodFirewallWriter(
                    self.filter_table_rules
                ).sync_pod_firewall_chains(
                    policies, local_pods(self.cluster, self.node_ip), version
                )

                self.ensure_explicit_accept()
                self.cleanup_stale_rules(active_policy_chains, active_pod_fw_chains, False)
                self.iptables.restore(_FILTER, self.filter_table_rules.getvalue())
                self.cleanup_stale_ipsets(active_policy_ipsets)
            finally:
                self.last_sync_duration = time.monotonic() - start
                log.debug("sync iptables took %.3fs", self.last_sync_duration)

    # -- top level chains ------------------------------------------------

    def _ensure_rule_at_position(
        self, chain: str, rule_spec: list[str], uuid: str, position: int
    ) -> None:
        ipt = self.iptables
        if not ipt.exists(_FILTER, chain, *rule_spec):
            ipt.insert(_FILTER, chain, position, *rule_spec)
            return

        rule_no = 0
        offset = 0
        for index, rule in enumerate(ipt.list(_FILTER, chain)):
            rule = rule.replace('"', "", 2)
            if rule.startswith("-P") or rule.startswith("-N"):
                # The policy or chain line is listed before the rules.
                offset += 1
                continue
            if uuid in rule:
                rule_no = index + 1 - offset
                break
        if rule_no != position:
            ipt.insert(_FILTER, chain, position, *rule_spec)
            ipt.delete(_FILTER, chain, str(rule_no + 1))

    def _ensure_input_rule(self, rule_spec: list[str], position: int) -> None:
        uuid, spec = add_uuid_for_rule_spec(KUBE_INPUT_CHAIN_NAME, rule_spec)
        self._ensure_rule_at_position(KUBE_INPUT_CHAIN_NAME, spec, uuid, position)

    def ensure_top_level_chains(self) -> None:
        """Create kube-router's top level chains and the rules jumping into them."""
        for builtin_chain, custom_chain in DEFAULT_CHAINS.items():
            if not self.iptables.chain_exists(_FILTER, custom_chain):
                self.iptables.new_chain(_FILTER, custom_chain)
            uuid, spec = add_uuid_for_rule_spec(
                builtin_chain,
                ["-m", "comment", "--comment", "kube-router netpol", "-j", custom_chain],
            )
            self._ensure_rule_at_position(builtin_chain, spec, uuid, 1)

        self._ensure_input_rule(
            ["-m", "comment", "--comment", "allow traffic to cluster IP",
             "-d", str(self.service_cluster_ip_range), "-j", "RETURN"],
            _SERVICE_VIP_POSITION,
        )
        for protocol, position in (
            ("tcp", _WHITELIST_TCP_NODE_PORTS_POSITION),
            ("udp", _WHITELIST_UDP_NODE_PORTS_POSITION),
        ):
            self._ensure_input_rule(
                ["-p", protocol, "-m", "comment", "--comment",
                 f"allow LOCAL {protocol.upper()} traffic to node ports",
                 "-m", "addrtype", "--dst-type", "LOCAL",
                 "-m", "multiport", "--dports", self.service_node_port_range, "-j", "RETURN"],
                position,
            )
        for index, external in enumerate(self.service_external_ip_ranges):
            self._ensure_input_rule(
                ["-m", "comment", "--comment", f"allow traffic to external IP range: {external}",
                 "-d", str(external), "-j", "RETURN"],
                index + _EXTERNAL_IP_POSITION_ADDITIVE,
            )

    def ensure_explicit_accept(self) -> None:
        """Put the ACCEPT-on-mark rule last in each of kube-router's top level chains."""
        text = self.filter_table_rules.getvalue()
        for chain in DEFAULT_CHAINS.values():
            rule = " ".join(["-A", chain, *_EXPLICIT_ACCEPT_ARGS])
            if text and not text.endswith("\n"):
                text += "\n"
            kept = [line for line in text.splitlines(keepends=True) if line.rstrip("\n") != rule]
            text = "".join(kept) + rule + "\n"
        self.filter_table_rules = _buffer(text)

    def ensure_default_network_policy_chain(self) -> None:
        """Create the chain marking traffic of pods that no policy selects."""
        mark_args = [
            "-j", "MARK", "-m", "comment", "--comment",
            "rule to mark traffic matching a network policy",
            "--set-xmark", "0x10000/0x10000",
        ]
        if not self.iptables.chain_exists(_FILTER, KUBE_DEFAULT_NETPOL_CHAIN):
            self.iptables.new_chain(_FILTER, KUBE_DEFAULT_NETPOL_CHAIN)
        self.iptables.append_unique(_FILTER, KUBE_DEFAULT_NETPOL_CHAIN, *mark_args)

    # -- cleanup ---------------------------------------------------------

    def cleanup_stale_rules(
        self,
        active_policy_chains: Iterable[str],
        active_pod_fw_chains: Iterable[str],
        delete_default_chains: bool,
    ) -> None:
        """Rewrite the buffered filter table without chains no longer in use."""
        active_policies = set(active_policy_chains or ())
        active_pods = set(active_pod_fw_chains or ())
        try:
            chains = self.iptables.list_chains(_FILTER)
        except IptablesError as exc:
            raise IptablesError(f"unable to list chains: {exc}", exc.exit_status) from exc

        stale: list[str] = []
        for chain in chains:
            if chain.startswith(KUBE_NETWORK_POLICY_CHAIN_PREFIX):
                if chain == KUBE_DEFAULT_NETPOL_CHAIN:
                    continue
                if chain not in active_policies:
                    stale.append(chain)
                    continue
            if chain.startswith(KUBE_POD_FIREWALL_CHAIN_PREFIX) and chain not in active_pods:
                stale.append(chain)
        if delete_default_chains:
            stale += [
                KUBE_INPUT_CHAIN_NAME,
                KUBE_FORWARD_CHAIN_NAME,
                KUBE_OUTPUT_CHAIN_NAME,
                KUBE_DEFAULT_NETPOL_CHAIN,
            ]

        new_chains: list[str] = []
        new_rules: list[str] = []
        for rule in self.filter_table_rules.getvalue().split("\n"):
            if any(name in rule for name in stale):
                continue
            if "COMMIT" in rule or rule.startswith("# "):
                continue
            if rule.startswith(":"):
                new_chains.append(rule + " - [0:0]\n")
            if rule.startswith("-"):
                new_rules.append(rule + "\n")
        self.filter_table_rules = _buffer(
            "*filter\n" + "".join(new_chains) + "".join(new_rules) + "COMMIT\n"
        )

    def cleanup_stale_ipsets(self, active_policy_ipsets: Iterable[str]) -> None:
        """Destroy policy ipsets that are not in ``active_policy_ipsets``."""
        active = set(active_policy_ipsets or ())
        with self._ipset_lock:
            self.ipsets.save()
            stale = [
                name
                for name in self.ipsets.names()
                if name.startswith((KUBE_SOURCE_IPSET_PREFIX, KUBE_DESTINATION_IPSET_PREFIX))
                and name not in active
            ]
            for name in stale:
                try:
                    self.ipsets.destroy(name)
                except RuntimeError as exc:
                    raise RuntimeError(f"failed to delete ipset {name} due to {exc}") from exc

    def cleanup(self) -> None:
        """Remove every chain, rule and ipset the controller created."""
        log.info("Cleaning up NetworkPolicyController configurations...")
        try:
            saved = self.iptables.save(_FILTER)
        except IptablesError as exc:
            log.error("error encountered attempting to list iptables rules for cleanup: %s", exc)
            return
        self.filter_table_rules = _buffer(saved)
        try:
            self.cleanup_stale_rules(set(), set(), True)
        except IptablesError as exc:
            log.error("error encountered attempting to cleanup iptables rules: %s", exc)
            return
        try:
            self.iptables.restore(_FILTER, self.filter_table_rules.getvalue())
        except IptablesError as exc:
            log.error(
                "error encountered while loading running iptables-restore: %s\n%s",
                exc, self.filter_table_rules.getvalue(),
            )
        try:
            self.cleanup_stale_ipsets(set())
        except RuntimeError as exc:
            log.error("error encountered while cleaning ipsets: %s", exc)
            return
        log.info("Successfully cleaned the NetworkPolicyController configurations")

    # -- event handlers --------------------------------------------------

    def on_pod_add(self, pod: object) -> None:
        """A pod appeared; only actionable pods can change the rules."""
        if isinstance(pod, Pod) and is_netpol_actionable(pod):
            log.debug("Received update to pod: %s/%s", pod.namespace, pod.name)
            self.request_full_sync()

    def on_pod_update(self, old_pod: object, new_pod: object) -> None:
        """A pod changed; sync when a change matters to network policies."""
        if not isinstance(new_pod, Pod) or not isinstance(old_pod, Pod):
            return
        if is_pod_update_netpol_relevant(old_pod, new_pod):
            log.debug("Received update to pod: %s/%s", new_pod.namespace, new_pod.name)
            self.request_full_sync()

    def on_pod_delete(self, obj: object) -> None:
        """A pod was deleted, possibly observed through a tombstone."""
        pod = obj.obj if isinstance(obj, Tombstone) else obj
        if not isinstance(pod, Pod):
            log.error("unexpected object type: %r", obj)
            return
        log.debug("Received pod: %s/%s delete event", pod.namespace, pod.name)
        self.request_full_sync()

    def on_namespace_add(self, namespace: Namespace) -> None:
        """A namespace appeared; unlabelled namespaces match no selector."""
        if namespace.labels is None:
            return
        log.debug("Received update for namespace: %s", namespace.name)
        self.request_full_sync()

    def on_namespace_update(self, old_namespace: Namespace, new_namespace: Namespace) -> None:
        """A namespace changed; only label changes matter."""
        if old_namespace.labels == new_namespace.labels:
            return
        log.debug("Received update for namespace: %s", new_namespace.name)
        self.request_full_sync()

    def on_namespace_delete(self, obj: object) -> None:
        """A namespace was deleted, possibly observed through a tombstone."""
        namespace = obj.obj if isinstance(obj, Tombstone) else obj
        if not isinstance(namespace, Namespace):
            log.error("unexpected object type: %r", obj)
            return
        if namespace.labels is None:
            return
        log.debug("Received namespace: %s delete event", namespace.name)
        self.request_full_sync()

    def on_network_policy_update(self, policy: NetworkPolicy) -> None:
        """A network policy was added or changed."""
        log.debug("Received update for network policy: %s/%s", policy.namespace, policy.name)
        self.request_full_sync()

    def on_network_policy_delete(self, obj: object) -> None:
        """A network policy was deleted, possibly observed through a tombstone."""
        policy = obj.obj if isinstance(obj, Tombstone) else obj
        if not isinstance(policy, NetworkPolicy):
            log.error("unexpected object type: %r", obj)
            return
        log.debug("Received network policy: %s/%s delete event", policy.namespace, policy.name)
        self.request_full_sync()
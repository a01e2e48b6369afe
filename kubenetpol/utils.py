"""Helpers deciding which pods matter to network policies."""

from __future__ import annotations

import re
from typing import Iterable

from kubenetpol.objects import Pod, PodPhase

_FINISHED_PHASES = frozenset({PodPhase.FAILED, PodPhase.SUCCEEDED, PodPhase.COMPLETED})
_NODE_PORT_RANGE = re.compile(r"([0-9]+)[:-]([0-9]+)")
_MAX_PORT = 0xFFFF


def is_pod_update_netpol_relevant(old_pod: Pod, new_pod: Pod) -> bool:
    """True when phase, IPs, host IP or labels changed between the two pods."""
    return (
        new_pod.phase != old_pod.phase
        or new_pod.pod_ip != old_pod.pod_ip
        or list(new_pod.pod_ips) != list(old_pod.pod_ips)
        or new_pod.host_ip != old_pod.host_ip
        or new_pod.labels != old_pod.labels
    )


def is_finished(pod: Pod) -> bool:
    """True for failed, succeeded and completed pods."""
    return pod.phase in _FINISHED_PHASES


def is_netpol_actionable(pod: Pod) -> bool:
    """True when network policies can be applied to the pod."""
    return not is_finished(pod) and pod.pod_ip != "" and not pod.host_network


def validate_node_port_range(node_port_option: str) -> str:
    """Validate ``start-end`` or ``start:end`` and return it as ``start:end``."""
    match = _NODE_PORT_RANGE.fullmatch(node_port_option)
    if match is None:
        raise ValueError(
            f"failed to parse node port range given: '{node_port_option}' "
            "please see specification in help text"
        )
    port1, port2 = (int(group) for group in match.groups())
    if port1 > _MAX_PORT:
        raise ValueError(
            f"could not parse first port number from range given: '{node_port_option}'"
        )
    if port2 > _MAX_PORT:
        raise ValueError(
            f"could not parse second port number from range given: '{node_port_option}'"
        )
    if port1 >= port2:
        raise ValueError(
            f"port 1 is greater than or equal to port 2 in range given: '{node_port_option}'"
        )
    return f"{port1}:{port2}"


def get_ips_from_pods(pods: Iterable) -> list[str]:
    """The ``ip`` of each pod, in order."""
    return [pod.ip for pod in pods]
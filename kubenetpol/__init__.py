"""Kubernetes NetworkPolicy enforcement through iptables chains and ipsets."""

__version__ = "0.1.0"
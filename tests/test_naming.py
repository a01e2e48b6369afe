import re

import pytest

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

_SUFFIX = re.compile(r"[A-Z2-7]{16}")


@pytest.mark.parametrize(
    "name, expected",
    [
        ("simple-egress", "KUBE-NWPLCY-QHFGOTFJZFXUJVTH"),
        ("simple-ingress-egress", "KUBE-NWPLCY-KO52PWL34ABMMBI7"),
        ("simple-egress-pr", "KUBE-NWPLCY-SQYQ7PVNG6A6Q3DU"),
        ("invalid-endport", "KUBE-NWPLCY-2A4DPWPR5REBS66I"),
    ],
)
def test_network_policy_chain_name_known_values(name, expected):
    assert network_policy_chain_name("nsA", name, "1") == expected


def test_chain_name_depends_on_version():
    first = network_policy_chain_name("nsA", "simple-egress", "1")
    second = network_policy_chain_name("nsA", "simple-egress", "2")
    assert first.startswith("KUBE-NWPLCY-")
    assert second.startswith("KUBE-NWPLCY-")
    assert first != second


def test_chain_name_is_deterministic():
    results = [network_policy_chain_name("nsA", "simple-egress", "1") for _ in range(3)]
    assert results == ["KUBE-NWPLCY-QHFGOTFJZFXUJVTH"] * 3


@pytest.mark.parametrize(
    "name, prefix",
    [
        (policy_source_pod_ipset_name("nsA", "pol"), "KUBE-SRC-"),
        (policy_destination_pod_ipset_name("nsA", "pol"), "KUBE-DST-"),
        (policy_indexed_source_pod_ipset_name("nsA", "pol", 0), "KUBE-SRC-"),
        (policy_indexed_destination_pod_ipset_name("nsA", "pol", 0), "KUBE-DST-"),
        (policy_indexed_source_ipblock_ipset_name("nsA", "pol", 0), "KUBE-SRC-"),
        (policy_indexed_destination_ipblock_ipset_name("nsA", "pol", 0), "KUBE-DST-"),
        (policy_indexed_ingress_named_port_ipset_name("nsA", "pol", 0, 0), "KUBE-DST-"),
        (policy_indexed_egress_named_port_ipset_name("nsA", "pol", 0, 0), "KUBE-DST-"),
    ],
)
def test_ipset_name_shape(name, prefix):
    assert name.startswith(prefix)
    assert _SUFFIX.fullmatch(name[len(prefix):])


def test_source_and_destination_share_hash():
    src = policy_source_pod_ipset_name("nsA", "pol")
    dst = policy_destination_pod_ipset_name("nsA", "pol")
    assert src[len("KUBE-SRC-"):] == dst[len("KUBE-DST-"):]


def test_indexed_names_differ_by_kind_and_index():
    names = {
        policy_indexed_source_pod_ipset_name("nsA", "pol", 0),
        policy_indexed_source_pod_ipset_name("nsA", "pol", 1),
        policy_indexed_source_ipblock_ipset_name("nsA", "pol", 0),
        policy_indexed_destination_pod_ipset_name("nsA", "pol", 0),
        policy_indexed_destination_ipblock_ipset_name("nsA", "pol", 0),
        policy_indexed_ingress_named_port_ipset_name("nsA", "pol", 0, 0),
        policy_indexed_egress_named_port_ipset_name("nsA", "pol", 0, 0),
        policy_destination_pod_ipset_name("nsA", "pol"),
    }
    assert len(names) == 8


def test_named_port_indices_are_concatenated():
    # Rule and port numbers are joined without a separator.
    assert policy_indexed_ingress_named_port_ipset_name(
        "ns", "p", 1, 23
    ) == policy_indexed_ingress_named_port_ipset_name("ns", "p", 12, 3)
    assert policy_indexed_egress_named_port_ipset_name(
        "ns", "p", 1, 23
    ) == policy_indexed_egress_named_port_ipset_name("ns", "p", 12, 3)
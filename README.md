# kubenetpol

`kubenetpol` enforces Kubernetes NetworkPolicies on a node. It uses the
`filter` table of iptables and hash ipsets.

## How it works

- Each network policy gets its own chain, `KUBE-NWPLCY-<hash>`. The
  chain's rules match source and destination addresses through ipsets
  named `KUBE-SRC-<hash>` and `KUBE-DST-<hash>`. A matching rule sets mark
  `0x10000` and returns.
- Each actionable pod on the node gets a firewall chain,
  `KUBE-POD-FW-<hash>`. A pod is actionable when it has a pod IP, is not
  host-networked, and is not Failed, Succeeded or Completed.
  - The pod chain sends the pod's traffic through every policy that
    selects the pod.
  - For a direction that no policy covers, the traffic goes through
    `KUBE-NWPLCY-DEFAULT` instead.
  - The chain also accepts traffic that comes from the local node and
    traffic in an established connection, and drops packets in the
    INVALID conntrack state.
- Unmarked traffic is logged through NFLOG group 100 and then rejected.
  Traffic that passes is marked `0x20000`. The last rule of
  `KUBE-ROUTER-INPUT`, `KUBE-ROUTER-FORWARD` and `KUBE-ROUTER-OUTPUT`
  accepts traffic with that mark.
- A full sync makes sure the top-level chains exist and are jumped to
  first from `INPUT`, `FORWARD` and `OUTPUT`. Within `KUBE-ROUTER-INPUT`,
  it also keeps the whitelist rules for the service cluster IP range, the
  node ports and any external IP ranges at their fixed positions.
- The sync then writes the whole filter table in one `iptables-restore`
  call, leaving out chains that are no longer in use. Finally it destroys
  `KUBE-SRC-`/`KUBE-DST-` ipsets that no policy uses any more.

## Modules

| Module | Contents |
| --- | --- |
| `kubenetpol.objects` | `Pod`, `Namespace`, `NetworkPolicy` and their parts, `LabelSelector`, `Tombstone`, `ObjectStore` and `ClusterState` |
| `kubenetpol.utils` | `is_pod_update_netpol_relevant`, `is_netpol_actionable`, `is_finished`, `validate_node_port_range`, `get_ips_from_pods` |
| `kubenetpol.naming` | Hash-based names for policy chains and ipsets |
| `kubenetpol.ipsets` | `IPSetRegistry`, which loads ipsets with `ipset save` and applies them with `ipset restore -exist` |
| `kubenetpol.policy` | `build_network_policies_info`, which resolves policies into `NetworkPolicyInfo` with target pods, peers and ports |
| `kubenetpol.iptables` | `Iptables`, a thin runner for `iptables`, `iptables-save` and `iptables-restore` |
| `kubenetpol.chains` | `PolicyChainWriter`, which writes per-policy chains and fills their ipsets |
| `kubenetpol.pod_rules` | `PodFirewallWriter` and `local_pods`, which cover the per-pod firewall chains |
| `kubenetpol.controller` | `NetworkPolicyConfig` and `NetworkPolicyController`, which run the sync loop, handle events and clean up |

## Examples

### Validate a node port range

Both `-` and `:` are accepted as the separator. The result always uses
`:`.

```python
from kubenetpol.utils import validate_node_port_range

validate_node_port_range("30000-32767")   # "30000:32767"
validate_node_port_range("2000:1000")     # raises ValueError
```

### Compute the name of a policy chain

The name is stable for a given namespace, policy name and sync version.

```python
from kubenetpol.naming import network_policy_chain_name

network_policy_chain_name("nsA", "simple-egress", "1")
# "KUBE-NWPLCY-QHFGOTFJZFXUJVTH"
```

### Resolve policies against the known cluster state

```python
from kubenetpol.objects import (
    ClusterState, LabelSelector, NetworkPolicy, NetworkPolicyEgressRule,
    NetworkPolicyPort, Pod, PodPhase, PolicyType,
)
from kubenetpol.policy import build_network_policies_info

cluster = ClusterState()
cluster.pods.add(Pod(name="web", namespace="nsA", labels={"app": "a"},
                     pod_ip="10.1.0.5", host_ip="10.10.10.10",
                     phase=PodPhase.RUNNING))
cluster.network_policies.add(NetworkPolicy(
    name="egress-30000", namespace="nsA",
    pod_selector=LabelSelector(match_labels={"app": "a"}),
    policy_types=[PolicyType.EGRESS],
    egress=[NetworkPolicyEgressRule(ports=[NetworkPolicyPort(port=30000)])],
))

[info] = build_network_policies_info(cluster)
info.policy_type          # PolicyKind.EGRESS
list(info.target_pods)    # ["10.1.0.5"]
```

### Run the controller

The controller identifies its node by one of these, taken in order:

1. `NetworkPolicyConfig.hostname_override`
2. the `NODE_NAME` environment variable
3. the host name

That name must be a key of the `nodes` mapping, which maps node names to
node IPs. If it is not, `ValueError` is raised. Invalid CIDRs and node port
ranges in the configuration also raise `ValueError`.

```python
import threading

from kubenetpol.controller import NetworkPolicyConfig, NetworkPolicyController

config = NetworkPolicyConfig(hostname_override="node")
controller = NetworkPolicyController(cluster, config, {"node": "10.10.10.10"})

stop = threading.Event()
threading.Thread(target=controller.run, args=(stop,)).start()

# Feed changes in through the event handlers:
# on_pod_add, on_pod_update, on_pod_delete,
# on_namespace_add, on_namespace_update, on_namespace_delete,
# on_network_policy_update, on_network_policy_delete.
controller.on_network_policy_update(cluster.network_policies.list()[0])

stop.set()
```

`run` syncs once every `iptables_sync_period` seconds (default 300). It
also syncs whenever an event handler calls `request_full_sync`. At most one
request is kept pending.

`controller.cleanup()` removes the top-level chains, all policy and pod
chains, and all `KUBE-SRC-`/`KUBE-DST-` ipsets.

### Configuration defaults

`NetworkPolicyConfig` has these defaults:

| Field | Default |
| --- | --- |
| `cluster_ip_cidr` | `10.96.0.0/12` |
| `node_port_range` | `30000-32767` |
| `external_ip_cidrs` | empty |
| `iptables_sync_period` | `300.0` |
| `metrics_enabled` | `False` |

### Running without touching the host

`Iptables` and `IPSetRegistry` both take a `runner` callable, which
`NetworkPolicyController` accepts through its `iptables` and `ipsets`
arguments. The two runners differ:

- The `Iptables` runner is called with `(argv, input_text)` and must
  return a `subprocess.CompletedProcess`.
- The `IPSetRegistry` runner is called with `(args, input_text)` and
  returns the command's standard output.

## What it does not do

- It does not talk to a Kubernetes API server. The caller fills
  `ClusterState` and calls the event handlers.
- It has no command-line program.
- It exports no metrics. `metrics_enabled` is stored but not used, and the
  duration of the last sync is kept in `last_sync_duration`.

## Requirements

- Python 3.10 or later. There are no third-party dependencies.
- Linux with `iptables`, `iptables-save`, `iptables-restore` and `ipset`.
- Root privileges for any operation that changes the firewall.
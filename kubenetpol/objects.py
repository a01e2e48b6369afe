"""In-memory model of the cluster objects that network policies are built from."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Union


class PodPhase(str, Enum):
    """Lifecycle phase of a pod."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"
    COMPLETED = "Completed"


class PolicyType(str, Enum):
    """Direction a network policy applies to."""

    INGRESS = "Ingress"
    EGRESS = "Egress"


_VALUED_OPERATORS = frozenset({"In", "NotIn"})
_PRESENCE_OPERATORS = frozenset({"Exists", "DoesNotExist"})


@dataclass
class LabelSelectorRequirement:
    """A single set-based label requirement."""

    key: str
    operator: str
    values: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.operator in _VALUED_OPERATORS:
            if not self.values:
                raise ValueError(
                    f"values: Invalid value: {self.values!r}: for 'in', 'notin' operators, "
                    "values set can't be empty"
                )
        elif self.operator in _PRESENCE_OPERATORS:
            if self.values:
                raise ValueError(
                    f"values: Invalid value: {self.values!r}: values set must be empty "
                    "for exists and does not exist"
                )
        else:
            raise ValueError(f"{self.operator!r} is not a valid label selector operator")

    def matches(self, labels: dict[str, str]) -> bool:
        present = self.key in labels
        if self.operator == "In":
            return present and labels[self.key] in self.values
        if self.operator == "NotIn":
            return not present or labels[self.key] not in self.values
        if self.operator == "Exists":
            return present
        return not present


@dataclass
class LabelSelector:
    """Label selector; an empty selector matches every set of labels."""

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = field(default_factory=list)

    def matches(self, labels: Optional[dict[str, str]]) -> bool:
        """Return True when all label pairs and all expressions hold for ``labels``."""
        labels = labels or {}
        if any(labels.get(key) != value for key, value in self.match_labels.items()):
            return False
        return all(req.matches(labels) for req in self.match_expressions)


@dataclass
class ContainerPort:
    """A port exposed by a container."""

    container_port: int
    name: str = ""
    protocol: str = "TCP"


@dataclass
class Container:
    """A container of a pod."""

    name: str = ""
    image: str = ""
    ports: list[ContainerPort] = field(default_factory=list)


@dataclass
class Pod:
    """The parts of a pod that network policy enforcement looks at."""

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    pod_ip: str = ""
    pod_ips: list[str] = field(default_factory=list)
    host_ip: str = ""
    phase: PodPhase = PodPhase.PENDING
    host_network: bool = False
    containers: list[Container] = field(default_factory=list)


@dataclass
class Namespace:
    """A namespace; ``labels`` is None when the namespace carries no labels."""

    name: str
    labels: Optional[dict[str, str]] = None

    @property
    def namespace(self) -> str:
        return ""


@dataclass
class IPBlock:
    """A CIDR with optional excluded sub-ranges."""

    cidr: str
    except_: list[str] = field(default_factory=list)


@dataclass
class NetworkPolicyPort:
    """A port (number or name) with optional protocol and end of range."""

    port: Union[int, str, None] = None
    protocol: Optional[str] = None
    end_port: Optional[int] = None


@dataclass
class NetworkPolicyPeer:
    """A source or destination of traffic in a policy rule."""

    pod_selector: Optional[LabelSelector] = None
    namespace_selector: Optional[LabelSelector] = None
    ip_block: Optional[IPBlock] = None


@dataclass
class NetworkPolicyIngressRule:
    """Traffic allowed into the selected pods."""

    ports: list[NetworkPolicyPort] = field(default_factory=list)
    from_: list[NetworkPolicyPeer] = field(default_factory=list)


@dataclass
class NetworkPolicyEgressRule:
    """Traffic allowed out of the selected pods."""

    ports: list[NetworkPolicyPort] = field(default_factory=list)
    to: list[NetworkPolicyPeer] = field(default_factory=list)


@dataclass
class NetworkPolicy:
    """A network policy; ``ingress``/``egress`` of None mean the field was absent."""

    name: str
    namespace: str
    pod_selector: LabelSelector = field(default_factory=LabelSelector)
    policy_types: list[PolicyType] = field(default_factory=list)
    ingress: Optional[list[NetworkPolicyIngressRule]] = None
    egress: Optional[list[NetworkPolicyEgressRule]] = None


@dataclass
class Tombstone:
    """Final known state of an object whose deletion was observed late."""

    key: str
    obj: object


def _object_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}" if namespace else name


class ObjectStore:
    """Objects keyed by ``namespace/name`` (or ``name`` when unnamespaced)."""

    def __init__(self) -> None:
        self._objects: dict[str, object] = {}

    @staticmethod
    def _key_of(obj: object) -> str:
        return _object_key(getattr(obj, "namespace", ""), getattr(obj, "name"))

    def add(self, obj: object) -> None:
        """Insert ``obj``, replacing any object with the same key."""
        self._objects[self._key_of(obj)] = obj

    def delete(self, obj: object) -> None:
        """Remove the object with the key of ``obj``; absent objects are ignored."""
        self._objects.pop(self._key_of(obj), None)

    def get(self, namespace: str, name: str) -> Optional[object]:
        """Return the object stored under the given namespace and name, or None."""
        return self._objects.get(_object_key(namespace, name))

    def list(self) -> list:
        """Return all stored objects in insertion order."""
        return list(self._objects.values())

    def __len__(self) -> int:
        return len(self._objects)

    def __iter__(self) -> Iterator[object]:
        return iter(list(self._objects.values()))


class ClusterState:
    """Pods, namespaces and network policies as currently known."""

    def __init__(
        self,
        pods: Optional[ObjectStore] = None,
        namespaces: Optional[ObjectStore] = None,
        network_policies: Optional[ObjectStore] = None,
    ) -> None:
        self.pods = pods if pods is not None else ObjectStore()
        self.namespaces = namespaces if namespaces is not None else ObjectStore()
        self.network_policies = (
            network_policies if network_policies is not None else ObjectStore()
        )

    def list_pods_by_namespace_and_labels(
        self, namespace: str, selector: LabelSelector
    ) -> list[Pod]:
        """Pods in ``namespace`` whose labels satisfy ``selector``."""
        return [
            pod
            for pod in self.pods
            if pod.namespace == namespace and selector.matches(pod.labels)
        ]

    def list_namespaces_by_labels(self, selector: LabelSelector) -> list[Namespace]:
        """Namespaces whose labels satisfy ``selector``."""
        return [ns for ns in self.namespaces if selector.matches(ns.labels)]
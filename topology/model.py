"""Declarative resource-dependency model.

A :class:`Topology` is a validated set of resources, ``depends-on`` edges and
named outputs. It only describes the desired end state: diffing, ordering of
API calls and rollback belong to the provisioning engine that consumes it.
Validation happens on construction so a bad graph is rejected before it is
submitted anywhere.
"""
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Tuple

from attrs import define, field
from attrs.validators import instance_of

from common.errors import ConfigurationError


class ResourceKind(str, Enum):
    NETWORK = "network"
    SECURITY_GROUP = "security-group"
    SECURITY_GROUP_RULE = "security-group-rule"
    SUBNET_GROUP = "subnet-group"
    DATABASE_INSTANCE = "database-instance"
    CONTAINER_REGISTRY = "container-registry"
    CONTAINER_IMAGE = "container-image"
    LOG_GROUP = "log-group"
    FUNCTION = "function"
    PERMISSION = "permission"
    REST_API = "rest-api"
    API_RESOURCE = "api-resource"
    API_ROUTE = "api-route"
    API_DEPLOYMENT = "api-deployment"
    API_STAGE = "api-stage"


def _non_empty_name(instance, attribute, value: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{attribute.name} must be a non-empty string, got {value!r}")


def _frozen_mapping(value: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value))


@define(slots=True, frozen=True)
class Resource:
    name: str = field(validator=_non_empty_name)
    kind: ResourceKind = field(converter=ResourceKind, validator=instance_of(ResourceKind))
    attributes: Mapping[str, Any] = field(factory=dict, converter=_frozen_mapping)
    # Attributes only known once the engine has provisioned the resource.
    outputs: Tuple[str, ...] = field(default=(), converter=tuple)


@define(slots=True, frozen=True)
class DependencyEdge:
    """``dependent`` must not be created or updated before ``dependency``."""

    dependent: str = field(validator=_non_empty_name)
    dependency: str = field(validator=_non_empty_name)


@define(slots=True, frozen=True)
class OutputRef:
    key: str = field(validator=_non_empty_name)
    resource: str = field(validator=_non_empty_name)
    attribute: str = field(validator=_non_empty_name)
    description: str = ""
    # Appended to the resolved attribute value, e.g. a URL path.
    suffix: str = ""


@define(slots=True, frozen=True)
class Topology:
    resources: Tuple[Resource, ...] = field(converter=tuple)
    edges: Tuple[DependencyEdge, ...] = field(default=(), converter=tuple)
    outputs: Tuple[OutputRef, ...] = field(default=(), converter=tuple)
    _by_name: Mapping[str, Resource] = field(init=False, repr=False, eq=False)

    def __attrs_post_init__(self) -> None:
        by_name: Dict[str, Resource] = {}
        for resource in self.resources:
            if resource.name in by_name:
                raise ConfigurationError(f"resource {resource.name!r} is declared twice")
            by_name[resource.name] = resource
        object.__setattr__(self, "_by_name", MappingProxyType(by_name))

        for edge in self.edges:
            for name in (edge.dependent, edge.dependency):
                if name not in by_name:
                    raise ConfigurationError(
                        f"edge {edge.dependent!r} -> {edge.dependency!r} "
                        f"references undeclared resource {name!r}"
                    )
            if edge.dependent == edge.dependency:
                raise ConfigurationError(f"resource {edge.dependent!r} depends on itself")

        keys = set()
        for output in self.outputs:
            if output.key in keys:
                raise ConfigurationError(f"output {output.key!r} is declared twice")
            keys.add(output.key)
            resource = by_name.get(output.resource)
            if resource is None:
                raise ConfigurationError(
                    f"output {output.key!r} references undeclared resource {output.resource!r}"
                )
            if output.attribute not in resource.outputs:
                raise ConfigurationError(
                    f"output {output.key!r} references {output.resource}.{output.attribute}, "
                    f"which is not one of its outputs {list(resource.outputs)}"
                )

        # Raises on cycles.
        self.order()

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self.resources)

    def resource(self, name: str) -> Resource:
        try:
            return self._by_name[name]
        except KeyError:
            raise ConfigurationError(f"resource {name!r} is not declared") from None

    def dependencies_of(self, name: str) -> List[str]:
        self.resource(name)
        return [edge.dependency for edge in self.edges if edge.dependent == name]

    def dependents_of(self, name: str) -> List[str]:
        self.resource(name)
        return [edge.dependent for edge in self.edges if edge.dependency == name]

    def of_kind(self, kind: ResourceKind) -> List[Resource]:
        return [resource for resource in self.resources if resource.kind == kind]

    def order(self) -> List[str]:
        """Resource names with every dependency before its dependents."""
        sorter: TopologicalSorter = TopologicalSorter()
        for resource in self.resources:
            sorter.add(resource.name)
        for edge in self.edges:
            sorter.add(edge.dependent, edge.dependency)
        try:
            return list(sorter.static_order())
        except CycleError as exc:
            cycle = exc.args[1]
            raise ConfigurationError(
                "dependency cycle: " + " -> ".join(reversed(cycle))
            ) from None


class TopologyBuilder:
    """Incrementally declare a :class:`Topology`, failing fast on bad names."""

    def __init__(self) -> None:
        self._resources: Dict[str, Resource] = {}
        self._edges: List[DependencyEdge] = []
        self._outputs: List[OutputRef] = []

    def add(self, name: str, kind: ResourceKind, outputs: Tuple[str, ...] = (), **attributes: Any) -> "TopologyBuilder":
        if name in self._resources:
            raise ConfigurationError(f"resource {name!r} is declared twice")
        self._resources[name] = Resource(name=name, kind=kind, attributes=attributes, outputs=outputs)
        return self

    def depends_on(self, dependent: str, *dependencies: str) -> "TopologyBuilder":
        for name in (dependent, *dependencies):
            if name not in self._resources:
                raise ConfigurationError(
                    f"cannot add dependency for {dependent!r}: {name!r} is not declared"
                )
        for dependency in dependencies:
            edge = DependencyEdge(dependent=dependent, dependency=dependency)
            if edge not in self._edges:
                self._edges.append(edge)
        return self

    def output(
        self, key: str, resource: str, attribute: str, description: str = "", suffix: str = ""
    ) -> "TopologyBuilder":
        self._outputs.append(
            OutputRef(
                key=key, resource=resource, attribute=attribute,
                description=description, suffix=suffix,
            )
        )
        return self

    def build(self) -> Topology:
        return Topology(
            resources=tuple(self._resources.values()),
            edges=tuple(self._edges),
            outputs=tuple(self._outputs),
        )

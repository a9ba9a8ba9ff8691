"""
Models for the overall deployment graph of a stack.
"""
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..exceptions import ValidationError
from ..RUNNERS.dependency_resolver import DependencyResolver
from .mount_spec import MountSpec
from .secret import SecretRequest
from .service_definition import ServiceDefinition


class DeploymentGraph(BaseModel):
    """
    Complete configuration for a multi-service stack: a directed acyclic graph
    over ``ServiceDefinition.depends_on`` plus the mounts, networks, secrets
    and configuration defaults the services need.
    """
    name: str = "stack"
    services: Dict[str, ServiceDefinition] = Field(default_factory=dict)
    mounts: List[MountSpec] = []
    networks: List[str] = []
    secrets: List[SecretRequest] = []
    config: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    def add(self, service: ServiceDefinition) -> None:
        """
        Adds one service whose dependencies are already in the graph.
        """
        self.extend([service])

    def extend(self, services: Iterable[ServiceDefinition]) -> None:
        """
        Adds services declared together; they may depend on each other.

        :raises ValidationError: On duplicate names or unknown dependencies.
        """
        batch = list(services)
        names = set(self.services)
        for svc in batch:
            if svc.name in names:
                raise ValidationError(f"Service '{svc.name}' is declared twice")
            names.add(svc.name)

        for svc in batch:
            unknown = [d for d in svc.depends_on if d not in names]
            if unknown:
                raise ValidationError(
                    f"Service '{svc.name}' depends on undeclared service(s): {', '.join(unknown)}"
                )
            if svc.name in svc.depends_on:
                raise ValidationError(f"Service '{svc.name}' depends on itself")

        for svc in batch:
            self.services[svc.name] = svc

    def topological_order(self) -> List[str]:
        """
        Start order; ties broken by declaration order.

        :raises CycleError: If the graph has a cycle.
        """
        deps = {name: list(svc.depends_on) for name, svc in self.services.items()}
        return DependencyResolver().resolve_order(deps)

    def teardown_order(self) -> List[str]:
        return list(reversed(self.topological_order()))

    def dependents_of(self, name: str) -> List[str]:
        """Services that directly or transitively depend on ``name``."""
        found: List[str] = []
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for svc in self.services.values():
                if current in svc.depends_on and svc.name not in found:
                    found.append(svc.name)
                    frontier.append(svc.name)
        return found

    def subgraph(self, names: Iterable[str]) -> "DeploymentGraph":
        """
        The named services plus everything they depend on.
        """
        keep = set()
        frontier = list(names)
        while frontier:
            current = frontier.pop()
            if current in keep:
                continue
            if current not in self.services:
                raise ValidationError(f"Unknown service '{current}'")
            keep.add(current)
            frontier.extend(self.services[current].depends_on)

        services = {n: s for n, s in self.services.items() if n in keep}
        mounts = [m for m in self.mounts if any(self._uses(s, m) for s in services.values())]
        return self.model_copy(update={"services": services, "mounts": mounts})

    def mounts_for(self, service: ServiceDefinition) -> List[MountSpec]:
        return [m for m in self.mounts if self._uses(service, m)]

    def services_using(self, mount: MountSpec) -> List[str]:
        return [n for n, s in self.services.items() if self._uses(s, mount)]

    def groups(self) -> List[str]:
        seen: List[str] = []
        for svc in self.services.values():
            if svc.group not in seen:
                seen.append(svc.group)
        return seen

    def services_in(self, group: str) -> List[ServiceDefinition]:
        return [s for s in self.services.values() if s.group == group]

    def find_secret(self, group: str, key: str) -> Optional[SecretRequest]:
        for request in self.secrets:
            if request.group == group and request.key == key:
                return request
        return None

    @staticmethod
    def _uses(service: ServiceDefinition, mount: MountSpec) -> bool:
        return any(mount.covers(v.host_path) for v in service.volumes)

"""
Dependency resolution for services to determine startup and shutdown order.
"""
from typing import Dict, List

from ..exceptions import CycleError


class DependencyResolver:
    """
    Resolves the startup and shutdown order of services based on their dependencies.
    """
    def resolve_order(self, dependencies: Dict[str, List[str]]) -> List[str]:
        """
        Determines the order to start services.

        Kahn's algorithm over the dependency map; among services whose
        dependencies are all satisfied, the one declared first wins, so the
        result is deterministic for a given declaration order.

        :param dependencies: Service name -> names it depends on, in declaration order.
        :return: Service names in the order they should be started.
        :raises CycleError: If a circular dependency is detected.
        """
        declared = list(dependencies)
        remaining = {name: set(d for d in deps if d in dependencies) for name, deps in dependencies.items()}

        ordered = []
        while remaining:
            ready = [name for name in declared if name in remaining and not remaining[name]]
            if not ready:
                raise CycleError(self._find_cycle(remaining))
            name = ready[0]
            ordered.append(name)
            del remaining[name]
            for deps in remaining.values():
                deps.discard(name)

        return ordered

    def _find_cycle(self, remaining: Dict[str, set]) -> List[str]:
        """
        Walks unresolved edges until a node repeats, for the error message.
        """
        start = next(iter(remaining))
        path = [start]
        current = start
        while True:
            current = sorted(remaining[current])[0]
            if current in path:
                return path[path.index(current):] + [current]
            path.append(current)

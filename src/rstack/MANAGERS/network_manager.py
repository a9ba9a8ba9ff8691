"""
Network management for the stack: the shared container networks that let
services of different groups reach each other by name.
"""
import logging
from typing import List

from ..MODELS.deployment_graph import DeploymentGraph
from ..RUNNERS.compose_engine import ComposeEngine

logger = logging.getLogger(__name__)


class NetworkManager:
    """
    Manages the externally-created networks declared by the stack.
    """
    def __init__(self, engine: ComposeEngine):
        """
        Initializes the network manager.

        :param engine: Container runtime adapter.
        """
        self.engine = engine

    def ensure(self, graph: DeploymentGraph) -> List[str]:
        """
        Creates every declared network that does not exist yet.

        :return: Names of the networks created.
        """
        created = []
        for name in graph.networks:
            if self.engine.network_exists(name):
                continue
            self.engine.network_create(name)
            logger.info("Created network %s", name)
            created.append(name)
        return created

    def remove(self, graph: DeploymentGraph) -> List[str]:
        """
        Removes the declared networks. Failures are reported, not raised.

        :return: Names of networks that could not be removed.
        """
        failed = []
        for name in graph.networks:
            if not self.engine.network_exists(name):
                continue
            result = self.engine.network_remove(name)
            if result.ok:
                logger.info("Removed network %s", name)
            else:
                failed.append(name)
        return failed

    def missing(self, graph: DeploymentGraph) -> List[str]:
        return [n for n in graph.networks if not self.engine.network_exists(n)]

"""
Volume management for services: the host directory layout below the media
root and the data directories services persist into.
"""
import logging
import os
import shutil
from typing import List, Optional, Tuple

from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.tool_config import ToolConfig

logger = logging.getLogger(__name__)


class VolumeManager:
    """
    Creates the directories bind-mounted into containers.
    """
    def __init__(self, config: ToolConfig, owner: Optional[Tuple[int, int]] = None):
        """
        Initializes the volume manager.

        :param config: Tool configuration (media root).
        :param owner: uid/gid that should own service data directories.
        """
        self.config = config
        self.owner = owner

    def host_paths(self, service: ServiceDefinition) -> List[str]:
        """
        Host directories of a service's bind mounts plus its data paths.
        Named volumes are managed by the runtime and skipped.
        """
        paths = [v.host_path for v in service.volumes if os.path.isabs(v.host_path)]
        for path in service.data_paths:
            if path not in paths:
                paths.append(path)
        return paths

    def prepare_layout(self, graph: DeploymentGraph) -> List[str]:
        """
        Creates the compose directory of every group and the host directories
        of every service, skipping managed mounts (those are prepared by the
        mount preparer).

        :return: Directories created.
        """
        created = []
        managed = [m.host_path for m in graph.mounts]
        for group in graph.groups():
            created += self._mkdir(self.config.group_dir(group), mode=0o700)
        for svc in graph.services.values():
            for path in self.host_paths(svc):
                if path in managed:
                    continue
                created += self._mkdir(path)
                if self.owner and svc.role != "database":
                    self._chown(path)
        return created

    def purge(self, service: ServiceDefinition, recreate: bool = False) -> List[str]:
        """
        Deletes a service's data directories.

        :param service: The service whose ``data_paths`` to delete.
        :param recreate: Create them again, empty.
        :return: Paths deleted.
        """
        removed = []
        for path in service.data_paths:
            if not self._is_below_root(path):
                logger.warning("Refusing to delete %s: outside %s", path, self.config.media_root)
                continue
            if os.path.exists(path):
                shutil.rmtree(path)
                removed.append(path)
                logger.info("Deleted %s", path)
            if recreate:
                self._mkdir(path)
        return removed

    def remove_root(self) -> bool:
        root = self.config.media_root
        if not os.path.isdir(root):
            return False
        shutil.rmtree(root)
        logger.info("Deleted %s", root)
        return True

    def _is_below_root(self, path: str) -> bool:
        root = os.path.normpath(self.config.media_root)
        return os.path.normpath(path).startswith(root.rstrip("/") + "/")

    def _mkdir(self, path: str, mode: int = 0o755) -> List[str]:
        if os.path.isdir(path):
            return []
        os.makedirs(path, mode=mode, exist_ok=True)
        return [path]

    def _chown(self, path: str) -> None:
        uid, gid = self.owner
        try:
            os.chown(path, uid, gid)
        except PermissionError:
            logger.debug("Cannot chown %s to %d:%d", path, uid, gid)

# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Converters for generating one docker-compose.yml per service group from the
deployment graph.
"""
import logging
import os
from typing import Any, Dict, List, Optional

import yaml

from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.service_definition import ProbeKind, ServiceDefinition
from ..MODELS.tool_config import ToolConfig
from ..RUNNERS.compose_engine import HASH_LABEL

logger = logging.getLogger(__name__)


class ComposeConverter:
    """
    Renders compose files. Environment values never appear here: each
    service reads them from its own ``<service>.env`` file next to the
    compose file.
    """

    def __init__(self, config: ToolConfig):
        """
        Initializes the compose converter.

        :param config: Tool configuration (group directory layout).
        """
        self.config = config

    def service_block(self, svc: ServiceDefinition, config_hash: Optional[str] = None) -> Dict[str, Any]:
        block: Dict[str, Any] = {
            "image": svc.image,
            "container_name": svc.container,
            "restart": svc.restart_policy.value,
        }
        if svc.environment:
            block["env_file"] = [f"{svc.name}.env"]
        if svc.network_mode:
            block["network_mode"] = svc.network_mode
        elif svc.networks:
            block["networks"] = list(svc.networks)
        if svc.ports and not svc.network_mode:
            block["ports"] = list(svc.ports)
        if svc.volumes:
            block["volumes"] = [v.to_compose() for v in svc.volumes]
        if svc.devices:
            block["devices"] = list(svc.devices)
        if svc.cap_add:
            block["cap_add"] = list(svc.cap_add)
        if svc.security_opt:
            block["security_opt"] = list(svc.security_opt)
        if svc.shm_size:
            block["shm_size"] = svc.shm_size

        probe = svc.health_probe
        if probe is not None and probe.kind == ProbeKind.EXEC:
            block["healthcheck"] = {
                "test": ["CMD-SHELL", probe.target.replace("$", "$$")],
                "interval": f"{probe.interval:g}s",
                "timeout": f"{probe.timeout:g}s",
                "retries": probe.retries,
                "start_period": f"{probe.start_period:g}s",
            }
        if config_hash:
            block["labels"] = {HASH_LABEL: config_hash}
        return block

    def render_group(self, graph: DeploymentGraph, group: str,
                     hashes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Builds the compose document of one group.

        :param graph: The deployment graph.
        :param group: Group name.
        :param hashes: Service name -> config hash, stored as a label.
        :return: Compose document as a dict.
        """
        hashes = hashes or {}
        services = graph.services_in(group)
        document: Dict[str, Any] = {
            "services": {s.name: self.service_block(s, hashes.get(s.name)) for s in services}
        }

        networks = []
        named_volumes = []
        for svc in services:
            for network in svc.networks:
                if not svc.network_mode and network not in networks:
                    networks.append(network)
            for volume in svc.named_volumes:
                if volume not in named_volumes:
                    named_volumes.append(volume)

        if networks:
            document["networks"] = {
                n: ({"external": True} if n in graph.networks else {}) for n in networks
            }

        for svc in services:
            # cross-group ordering is left to the group units
            same_group = [graph.services[d] for d in svc.depends_on if graph.services[d].group == group]
            if same_group:
                document["services"][svc.name]["depends_on"] = {
                    dep.name: {"condition": _start_condition(dep)} for dep in same_group
                }

        if named_volumes:
            document["volumes"] = {v: {} for v in named_volumes}
        return document

    def to_yaml(self, document: Dict[str, Any]) -> str:
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)

    def convert(self, graph: DeploymentGraph, hashes: Optional[Dict[str, str]] = None,
                output_dir: Optional[str] = None) -> List[str]:
        """
        Writes the compose file of every group, leaving unchanged files alone.

        :param graph: The deployment graph.
        :param hashes: Service name -> config hash.
        :param output_dir: Write ``<group>/docker-compose.yml`` here instead of
                           into the media root.
        :return: Paths whose content changed.
        """
        changed = []
        for group in graph.groups():
            if output_dir:
                path = os.path.join(output_dir, group, "docker-compose.yml")
            else:
                path = self.config.compose_file(group)
            content = self.to_yaml(self.render_group(graph, group, hashes))

            if os.path.isfile(path):
                with open(path, "r") as f:
                    if f.read() == content:
                        continue
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w") as f:
                f.write(content)
            logger.info("Wrote %s", path)
            changed.append(path)
        return changed


def _start_condition(dependency: ServiceDefinition) -> str:
    probe = dependency.health_probe
    if probe is not None and probe.kind == ProbeKind.EXEC:
        return "service_healthy"
    return "service_started"

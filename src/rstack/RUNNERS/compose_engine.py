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
Container runtime adapter: the docker CLI and its compose plugin.
"""
import json
import logging
from dataclasses import dataclass
from typing import List, Optional

from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.tool_config import ToolConfig
from .command_runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

HASH_LABEL = "io.rstack.config-hash"


@dataclass
class ContainerInfo:
    """What the runtime reports about one container."""

    name: str
    status: str
    image_id: Optional[str] = None
    config_hash: Optional[str] = None
    health: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.status == "running"


class ComposeEngine:
    """
    Drives containers through ``docker`` and ``docker compose``.

    Each service group is its own compose project (``-p <group>``), so
    services are addressed individually with ``--no-deps``; start ordering
    is the orchestrator's job, not compose's.
    """
    def __init__(self, runner: CommandRunner, config: ToolConfig):
        self.runner = runner
        self.config = config

    def _compose(self, group: str) -> List[str]:
        return ["docker", "compose", "-p", group, "-f", self.config.compose_file(group)]

    def available(self) -> bool:
        return self.runner.run(["docker", "compose", "version"], check=False).ok

    def inspect(self, container: str) -> Optional[ContainerInfo]:
        """
        :return: Container facts, or None if the container does not exist.
        """
        result = self.runner.run(["docker", "inspect", "--type", "container", container], check=False)
        if not result.ok:
            return None
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            logger.warning("Unparseable inspect output for %s", container)
            return None
        if not data:
            return None

        item = data[0]
        state = item.get("State") or {}
        labels = (item.get("Config") or {}).get("Labels") or {}
        return ContainerInfo(
            name=container,
            status=state.get("Status", "unknown"),
            image_id=item.get("Image"),
            config_hash=labels.get(HASH_LABEL),
            health=(state.get("Health") or {}).get("Status"),
        )

    def image_id(self, image: str) -> Optional[str]:
        result = self.runner.run(["docker", "image", "inspect", "--format", "{{.Id}}", image], check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def pull(self, service: ServiceDefinition) -> None:
        self.runner.run(self._compose(service.group) + ["pull", service.name])

    def up(self, service: ServiceDefinition, recreate: bool = False) -> CommandResult:
        """
        Creates (or recreates) and starts one service.
        """
        command = self._compose(service.group) + ["up", "-d", "--no-deps"]
        if recreate:
            command.append("--force-recreate")
        command.append(service.name)
        return self.runner.run(command)

    def start(self, container: str) -> None:
        self.runner.run(["docker", "start", container])

    def stop(self, container: str, timeout: int = 30) -> CommandResult:
        return self.runner.run(["docker", "stop", "-t", str(timeout), container], check=False)

    def remove(self, container: str) -> CommandResult:
        return self.runner.run(["docker", "rm", "-f", "-v", container], check=False)

    def volume_remove(self, group: str, volume: str) -> CommandResult:
        # compose prefixes named volumes with the project name
        return self.runner.run(["docker", "volume", "rm", "-f", f"{group}_{volume}"], check=False)

    def exec(self, container: str, command: str, timeout: Optional[float] = None) -> CommandResult:
        return self.runner.run(["docker", "exec", container, "sh", "-c", command], check=False, timeout=timeout)

    def network_exists(self, name: str) -> bool:
        return self.runner.run(["docker", "network", "inspect", name], check=False).ok

    def network_create(self, name: str) -> None:
        self.runner.run(["docker", "network", "create", name])

    def network_remove(self, name: str) -> CommandResult:
        return self.runner.run(["docker", "network", "rm", name], check=False)

    def down(self, group: str) -> CommandResult:
        return self.runner.run(self._compose(group) + ["down"], check=False)

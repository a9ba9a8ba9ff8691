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
Converters for generating systemd units: the boot-time mount units, the
runtime ordering drop-in and one compose-backed unit per service group.
"""
import os
from typing import Dict, List

from jinja2 import Template

from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.mount_spec import MountSpec
from ..MODELS.tool_config import ToolConfig

MOUNT_UNIT_TEMPLATE = """[Unit]
Description=rstack: make {{ path }} {{ mode }} before the container runtime starts
After=local-fs.target
Before={{ runtime_unit }}

[Service]
Type=oneshot
ExecStart=/usr/bin/mkdir -p {{ path }}
ExecStart=/bin/sh -c '/usr/bin/mountpoint -q {{ path }} || /usr/bin/mount --bind {{ path }} {{ path }}'
ExecStart=/usr/bin/mount --make-{{ mode }} {{ path }}
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""

RUNTIME_DROPIN_TEMPLATE = """[Unit]
Requires={{ units | join(' ') }}
After={{ units | join(' ') }}
"""

STACK_UNIT_TEMPLATE = """[Unit]
Description=rstack: {{ group }} stack (compose)
Requires={{ requires | join(' ') }}
After={{ requires | join(' ') }}
Wants=network-online.target
After=network-online.target

[Service]
Type=oneshot
RemainAfterExit=yes
WorkingDirectory={{ working_dir }}
{% for network in networks -%}
ExecStartPre=/bin/sh -c '/usr/bin/docker network inspect {{ network }} >/dev/null 2>&1 || /usr/bin/docker network create {{ network }}'
{% endfor -%}
ExecStart=/usr/bin/docker compose -p {{ group }} -f {{ compose_file }} up -d
ExecStop=/usr/bin/docker compose -p {{ group }} -f {{ compose_file }} down

[Install]
WantedBy=multi-user.target
"""

DROPIN_NAME = "10-rstack-mounts.conf"


def stack_unit_name(group: str) -> str:
    return f"{group}-stack.service"


class SystemdConverter:
    """
    Renders the unit files that make the stack come back after a reboot in
    the right order: mounts, then the container runtime, then the groups.
    """

    def __init__(self, config: ToolConfig):
        """
        Initializes the systemd converter.

        :param config: Tool configuration (paths and runtime unit name).
        """
        self.config = config
        self.mount_template = Template(MOUNT_UNIT_TEMPLATE)
        self.dropin_template = Template(RUNTIME_DROPIN_TEMPLATE)
        self.stack_template = Template(STACK_UNIT_TEMPLATE)

    def mount_unit(self, spec: MountSpec) -> str:
        return self.mount_template.render(
            path=spec.host_path,
            mode=spec.propagation_mode.value,
            runtime_unit=self.config.runtime_unit,
        )

    def runtime_dropin(self, mounts: List[MountSpec]) -> str:
        return self.dropin_template.render(units=[m.unit_name for m in mounts])

    def dropin_path(self) -> str:
        return os.path.join(self.config.systemd_dir, f"{self.config.runtime_unit}.d", DROPIN_NAME)

    def stack_unit(self, graph: DeploymentGraph, group: str) -> str:
        """
        Renders the unit of one service group. It requires the runtime, every
        mount its services use and the units of groups it depends on.

        :param graph: The deployment graph.
        :param group: Group name.
        :return: Unit file content.
        """
        requires = [self.config.runtime_unit]
        networks: List[str] = []
        for svc in graph.services_in(group):
            for mount in graph.mounts_for(svc):
                if mount.unit_name not in requires:
                    requires.append(mount.unit_name)
            for dep in svc.depends_on:
                dep_unit = stack_unit_name(graph.services[dep].group)
                if graph.services[dep].group != group and dep_unit not in requires:
                    requires.append(dep_unit)
            for network in svc.networks:
                if network in graph.networks and network not in networks:
                    networks.append(network)

        return self.stack_template.render(
            group=group,
            requires=requires,
            networks=networks,
            working_dir=self.config.group_dir(group),
            compose_file=self.config.compose_file(group),
        )

    def render(self, graph: DeploymentGraph) -> Dict[str, str]:
        """
        Renders every unit of the stack.

        :param graph: The deployment graph.
        :return: Mapping of absolute unit file path to content.
        """
        units: Dict[str, str] = {}
        for mount in graph.mounts:
            units[os.path.join(self.config.systemd_dir, mount.unit_name)] = self.mount_unit(mount)
        if graph.mounts:
            units[self.dropin_path()] = self.runtime_dropin(graph.mounts)
        for group in graph.groups():
            units[os.path.join(self.config.systemd_dir, stack_unit_name(group))] = self.stack_unit(graph, group)
        return units

    def convert(self, graph: DeploymentGraph, output_dir: str) -> List[str]:
        """
        Writes every unit below ``output_dir`` (keeping the layout relative
        to the systemd directory), for inspection without installing.

        :return: Paths written.
        """
        written = []
        for path, content in self.render(graph).items():
            relative = os.path.relpath(path, self.config.systemd_dir)
            target = os.path.join(output_dir, relative)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "w") as f:
                f.write(content)
            written.append(target)
        return written

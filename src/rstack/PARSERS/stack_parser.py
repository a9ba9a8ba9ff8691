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
Parsers for rstack stack files (YAML).

A stack file declares service groups, each with its configuration defaults,
secrets and services, plus the shared networks and managed mounts::

    networks: [media-net]
    mounts:
      riven: {path: "${MEDIA_ROOT}/riven/mount", propagation: rshared}
    groups:
      riven:
        config: {RIVEN_DB_NAME: riven}
        secrets:
          API_KEY: {kind: generated, shape: hex, length: 16}
        services:
          riven:
            image: spoked/riven:dev
            environment:
              API_KEY: {ref: API_KEY}
              RIVEN_DATABASE_HOST: "postgresql://...@riven-db/{{ RIVEN_DB_NAME }}"
"""
from typing import Any, Dict, List, Mapping, Optional

import pydantic
import yaml

from ..exceptions import ValidationError
from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.mount_spec import MountSpec
from ..MODELS.secret import SecretRequest
from ..MODELS.service_definition import (
    EnvBinding,
    HealthProbe,
    Propagation,
    ServiceDefinition,
    SettingsTarget,
    VolumeMount,
)
from ..UTILS.string_interpolation import EnvironmentInterpolator

_PROPAGATION = {p.value for p in Propagation}


class StackParser:
    """
    Parser for stack files.
    """
    def __init__(self, context: Optional[Mapping[str, str]] = None):
        """
        Initializes the parser with the ``${VAR}`` interpolation context.

        :param context: Host facts and tool settings (MEDIA_ROOT, HOST_IP, ...).
        """
        self.context = dict(context or {})

    def parse(self, stack_path: str) -> DeploymentGraph:
        """
        Parses a stack file from a path.

        :param stack_path: Path to the stack file.
        :return: The deployment graph.
        :raises ValidationError: On unreadable, malformed or inconsistent input.
        """
        try:
            with open(stack_path, "r") as f:
                content = f.read()
        except OSError as e:
            raise ValidationError(f"Cannot read stack file {stack_path}: {e}") from e
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> DeploymentGraph:
        """
        Parses a stack file from a string.

        :param content: YAML content of the stack file.
        :return: The deployment graph.
        """
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise ValidationError(f"Stack file: {e.args[0]}") from None

        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"Stack file is not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError("Stack file must be a mapping")

        try:
            return self._build(data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Stack file: {_first_error(e)}") from e

    def _build(self, data: Dict[str, Any]) -> DeploymentGraph:
        graph = DeploymentGraph(
            name=str(data.get("name", "stack")),
            networks=self._to_list(data.get("networks")),
        )
        for name, spec in _mapping(data.get("mounts"), "mounts").items():
            graph.mounts.append(self._parse_mount(name, spec))

        services: List[ServiceDefinition] = []
        for group, group_spec in _mapping(data.get("groups"), "groups").items():
            group_spec = _mapping(group_spec, f"group '{group}'")
            config = _mapping(group_spec.get("config"), f"group '{group}' config")
            graph.config[group] = {str(k): _scalar(v) for k, v in config.items()}

            for key, spec in _mapping(group_spec.get("secrets"), f"group '{group}' secrets").items():
                spec = dict(_mapping(spec, f"secret '{key}'"))
                clears = self._to_list(spec.pop("clears", []))
                graph.secrets.append(SecretRequest(group=group, key=key, policy=spec, clears=clears))

            for name, spec in _mapping(group_spec.get("services"), f"group '{group}' services").items():
                services.append(self._parse_service(name, group, _mapping(spec, f"service '{name}'")))

        graph.extend(services)
        graph.topological_order()

        for request in graph.secrets:
            after = getattr(request.policy, "after", None)
            if after is not None and after not in graph.services:
                raise ValidationError(f"Secret {request.key} waits for undeclared service '{after}'")
        return graph

    def _parse_mount(self, name: str, spec: Any) -> MountSpec:
        if isinstance(spec, str):
            spec = {"path": spec}
        spec = _mapping(spec, f"mount '{name}'")
        return MountSpec(
            name=name,
            host_path=spec.get("path", ""),
            propagation_mode=spec.get("propagation", Propagation.RSHARED.value),
            boot_unit=spec.get("unit"),
        )

    def _parse_service(self, name: str, group: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition.

        :param name: The name of the service.
        :param group: The group it belongs to.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        if not spec.get("image"):
            raise ValidationError(f"Service '{name}' has no image")

        health = _mapping(spec.get("health"), f"service '{name}' health")
        settings = _mapping(spec.get("settings"), f"service '{name}' settings")

        return ServiceDefinition(
            name=name,
            group=group,
            image=spec["image"],
            container_name=spec.get("container_name"),
            networks=self._to_list(spec.get("networks")),
            network_mode=spec.get("network_mode"),
            ports=[str(p) for p in self._to_list(spec.get("ports"))],
            volumes=[self._parse_volume(name, v) for v in self._items(spec.get("volumes"))],
            data_paths=self._to_list(spec.get("data_paths")),
            environment=self._parse_environment(spec.get("environment")),
            depends_on=self._to_list(spec.get("depends_on")),
            health_probe=HealthProbe.model_validate(health) if health else None,
            restart_policy=spec.get("restart", "unless-stopped"),
            role=spec.get("role"),
            devices=self._to_list(spec.get("devices")),
            cap_add=self._to_list(spec.get("cap_add")),
            security_opt=self._to_list(spec.get("security_opt")),
            shm_size=spec.get("shm_size"),
            settings=SettingsTarget.model_validate(settings) if settings else None,
        )

    def _parse_volume(self, service: str, volume: Any) -> VolumeMount:
        if isinstance(volume, dict):
            return VolumeMount.model_validate(volume)

        parts = str(volume).split(":")
        if len(parts) < 2 or len(parts) > 3:
            raise ValidationError(f"Service '{service}': bad volume '{volume}'")
        read_only, propagation = False, None
        if len(parts) == 3:
            for option in parts[2].split(","):
                if option == "ro":
                    read_only = True
                elif option == "rw":
                    read_only = False
                elif option in _PROPAGATION:
                    propagation = option
                else:
                    raise ValidationError(f"Service '{service}': unknown volume option '{option}'")
        return VolumeMount(host_path=parts[0], container_path=parts[1],
                           read_only=read_only, propagation=propagation)

    def _parse_environment(self, env_spec: Any) -> List[EnvBinding]:
        bindings = []
        if isinstance(env_spec, list):
            for entry in env_spec:
                key, _, value = str(entry).partition("=")
                bindings.append(EnvBinding(key=key, value=value))
        elif isinstance(env_spec, dict):
            for key, value in env_spec.items():
                if isinstance(value, dict):
                    bindings.append(EnvBinding.model_validate({**value, "key": key}))
                else:
                    bindings.append(EnvBinding(key=key, value=_scalar(value)))
        return bindings

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        return [str(v) for v in self._items(val)]

    def _items(self, val: Any) -> List[Any]:
        # a lone scalar stands for a one-item list
        if val is None:
            return []
        if isinstance(val, (str, int, float)):
            return [val]
        if not isinstance(val, list):
            raise ValidationError(f"Expected a list, got {type(val).__name__}")
        return val


def _mapping(value: Any, where: str) -> Dict[Any, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{where} must be a mapping")
    return value


def _scalar(value: Any) -> str:
    # YAML booleans become the strings services expect
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _first_error(error: pydantic.ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(p) for p in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", str(error))

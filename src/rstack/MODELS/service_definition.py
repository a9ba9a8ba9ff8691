"""
Models for defining services, including restart policies, health probes, mounts
and environment bindings.
"""
import hashlib
import json
import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


class Propagation(str, Enum):
    """
    Mount propagation modes understood by both the kernel and the engine.
    """
    SHARED = "shared"
    RSHARED = "rshared"
    SLAVE = "slave"
    RSLAVE = "rslave"
    PRIVATE = "private"


class ProbeKind(str, Enum):
    HTTP = "http"
    TCP = "tcp"
    EXEC = "exec"


class HealthProbe(BaseModel):
    """
    Readiness probe for a service.

    ``target`` is a URL for ``http``, ``host:port`` for ``tcp`` and a shell
    command run inside the container for ``exec``.
    """
    model_config = ConfigDict(frozen=True)

    kind: ProbeKind
    target: str
    interval: float = 2.0
    timeout: float = 5.0
    retries: int = 10
    start_period: float = 0.0
    expect_status: Optional[int] = None
    expect_body: Optional[str] = None

    @property
    def budget(self) -> float:
        """Default maximum wait: start period plus one interval per retry."""
        return self.start_period + self.interval * self.retries


class VolumeMount(BaseModel):
    """
    Defines a mapping between a host path and a container path.
    """
    model_config = ConfigDict(frozen=True)

    host_path: str
    container_path: str
    propagation: Optional[Propagation] = None
    read_only: bool = False

    def to_compose(self) -> str:
        options = []
        if self.read_only:
            options.append("ro")
        if self.propagation:
            options.append(self.propagation.value)
        spec = f"{self.host_path}:{self.container_path}"
        return f"{spec}:{','.join(options)}" if options else spec


class EnvBinding(BaseModel):
    """
    One environment variable of a service.

    Either ``value`` (a literal, or a Jinja2 template rendered against the
    service group's configuration) or ``ref`` (the name of a configuration or
    secret key) must be given.
    """
    model_config = ConfigDict(frozen=True)

    key: str
    value: Optional[str] = None
    ref: Optional[str] = None

    @model_validator(mode="after")
    def _one_source(self) -> "EnvBinding":
        if (self.value is None) == (self.ref is None):
            raise ValueError(f"env '{self.key}' needs exactly one of value/ref")
        return self


class SettingsTarget(BaseModel):
    """
    Administrative settings API of a running service and the patch to push.
    """
    model_config = ConfigDict(frozen=True)

    url: str
    api_key_ref: Optional[str] = None
    api_key_header: str = "x-api-key"
    values: Dict[str, Any] = Field(default_factory=dict)
    ranking: bool = False


class ServiceDefinition(BaseModel):
    """
    The full, immutable definition of a single deployable service.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    group: str
    image: str
    container_name: Optional[str] = None

    # Networking
    networks: List[str] = []
    network_mode: Optional[str] = None
    ports: List[str] = []

    # Storage
    volumes: List[VolumeMount] = []
    data_paths: List[str] = []

    # Environment
    environment: List[EnvBinding] = []

    # Lifecycle
    depends_on: List[str] = []
    health_probe: Optional[HealthProbe] = None
    restart_policy: RestartPolicyCondition = RestartPolicyCondition.UNLESS_STOPPED
    role: Optional[str] = None

    # Privileges
    devices: List[str] = []
    cap_add: List[str] = []
    security_opt: List[str] = []
    shm_size: Optional[str] = None

    settings: Optional[SettingsTarget] = None

    @property
    def container(self) -> str:
        return self.container_name or self.name

    @property
    def named_volumes(self) -> List[str]:
        """Volumes the runtime manages, as opposed to host paths."""
        return [v.host_path for v in self.volumes if not os.path.isabs(v.host_path)]

    def config_hash(self, resolved_env: Dict[str, str]) -> str:
        """
        Fingerprint of the definition plus its resolved environment.

        Any change, including a rotated secret, yields a different hash and
        therefore a recreate on the next apply.

        :param resolved_env: Environment with every binding substituted.
        :return: Hex digest.
        """
        payload = self.model_dump(mode="json", exclude={"settings", "data_paths", "role"})
        payload["resolved_env"] = dict(sorted(resolved_env.items()))
        encoded = json.dumps(payload, sort_keys=True).encode()
        return hashlib.sha256(encoded).hexdigest()[:16]

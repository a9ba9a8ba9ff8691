"""
Configuration of the rstack tool itself (as opposed to the stack it manages).
"""
import os
from pathlib import Path
from typing import Dict, Mapping, Optional

import pydantic
from dotenv import dotenv_values
from pydantic import BaseModel

from ..exceptions import ValidationError

DEFAULT_ENV_FILE = "/etc/rstack.env"
ENV_PREFIX = "RSTACK_"
BUNDLED_STACK = str(Path(__file__).resolve().parent.parent / "STACKS" / "media.yml")


class ToolConfig(BaseModel):
    """
    Paths and defaults used by every command.
    """
    media_root: str = "/opt/media"
    stack_file: str = BUNDLED_STACK
    state_dir: Optional[str] = None
    lock_file: Optional[str] = None
    runtime_unit: str = "docker.service"
    systemd_dir: str = "/etc/systemd/system"
    log_level: str = "INFO"
    health_max_wait: Optional[float] = None
    discovery_max_wait: float = 180.0
    apt_keyring: str = "/etc/apt/keyrings/docker.gpg"
    apt_sources_list: str = "/etc/apt/sources.list.d/docker.list"
    os_release: str = "/etc/os-release"

    @property
    def state_path(self) -> str:
        return self.state_dir or os.path.join(self.media_root, ".rstack")

    @property
    def lock_path(self) -> str:
        return self.lock_file or os.path.join(self.state_path, "rstack.lock")

    @property
    def snapshot_dir(self) -> str:
        return os.path.join(self.state_path, "snapshots")

    def group_dir(self, group: str) -> str:
        return os.path.join(self.media_root, group, "compose")

    def group_env_file(self, group: str) -> str:
        return os.path.join(self.group_dir(group), ".env")

    def compose_file(self, group: str) -> str:
        return os.path.join(self.group_dir(group), "docker-compose.yml")

    def service_env_file(self, group: str, service: str) -> str:
        return os.path.join(self.group_dir(group), f"{service}.env")

    @classmethod
    def load(
        cls,
        overrides: Optional[Mapping[str, object]] = None,
        env_file: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ToolConfig":
        """
        Builds the configuration from, in increasing precedence: defaults, an
        optional dotenv file, ``RSTACK_*`` environment variables and explicit
        overrides (CLI options). ``None`` overrides are ignored.

        :param overrides: Field name -> value.
        :param env_file: Dotenv file path; defaults to /etc/rstack.env if present.
        :param environ: Process environment, defaults to ``os.environ``.
        :return: The resolved configuration.
        :raises ValidationError: If a value has the wrong type.
        """
        values: Dict[str, object] = {}
        path = env_file or DEFAULT_ENV_FILE
        if os.path.isfile(path):
            values.update(_strip_prefix(dotenv_values(path)))
        values.update(_strip_prefix(os.environ if environ is None else environ))
        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = value
        try:
            return cls(**{k: v for k, v in values.items() if k in cls.model_fields})
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            name = ENV_PREFIX + ".".join(str(p) for p in first.get("loc", ())).upper()
            raise ValidationError(f"Bad setting {name}: {first.get('msg')}") from e


def _strip_prefix(source: Mapping[str, Optional[str]]) -> Dict[str, str]:
    return {
        key[len(ENV_PREFIX):].lower(): value
        for key, value in source.items()
        if key.startswith(ENV_PREFIX) and value is not None
    }

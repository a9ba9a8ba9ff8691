"""
Models for host mounts whose propagation mode rstack manages.
"""
import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from .service_definition import Propagation


class MountSpec(BaseModel):
    """
    A host directory that must be a shared-propagation mount before any
    dependent service starts. Mount state is host-global.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    host_path: str
    propagation_mode: Propagation = Propagation.RSHARED
    boot_unit: Optional[str] = None

    @field_validator("host_path")
    @classmethod
    def _absolute(cls, value: str) -> str:
        if not os.path.isabs(value):
            raise ValueError(f"mount path must be absolute: {value}")
        return os.path.normpath(value)

    @field_validator("propagation_mode")
    @classmethod
    def _supported(cls, value: Propagation) -> Propagation:
        if value not in (Propagation.SHARED, Propagation.RSHARED, Propagation.RSLAVE):
            raise ValueError(f"unsupported propagation mode for a managed mount: {value.value}")
        return value

    @property
    def unit_name(self) -> str:
        return self.boot_unit or f"{self.name}-mount.service"

    def covers(self, path: str) -> bool:
        """
        Whether ``path`` is the mount itself or lies below it.
        """
        path = os.path.normpath(path)
        return path == self.host_path or path.startswith(self.host_path.rstrip("/") + "/")

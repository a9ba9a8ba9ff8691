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
Preparation of host directories as propagation-aware mount points.

A filesystem that one container mounts inside a bind-mounted directory only
becomes visible to other containers if the host side is a shared mount. This
module makes sure it is, before any dependent container starts.
"""
import logging
import os
from typing import Callable, Iterable, List, Optional, Set

import psutil

from ..CONVERTERS.to_systemd import SystemdConverter
from ..exceptions import CommandError, MountError
from ..MODELS.mount_spec import MountSpec
from ..MODELS.service_definition import Propagation
from ..RUNNERS.command_runner import CommandRunner
from .systemd_manager import SystemdManager

logger = logging.getLogger(__name__)

MOUNTINFO = "/proc/self/mountinfo"
FUSE_UNMOUNT = (["fusermount3", "-uz"], ["fusermount", "-uz"])


def system_mountpoints() -> List[str]:
    return [p.mountpoint for p in psutil.disk_partitions(all=True)]


def _unescape(field: str) -> str:
    # mountinfo octal-escapes space, tab, newline and backslash
    for code, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        field = field.replace(code, char)
    return field


def parse_mountinfo(content: str) -> List[dict]:
    """
    Parses /proc/<pid>/mountinfo.

    :param content: File content.
    :return: One dict per mount with ``mountpoint`` and ``propagation``
             (``shared``, ``slave``, ``private`` or ``unbindable``).
    """
    entries = []
    for line in content.splitlines():
        fields = line.split()
        if len(fields) < 7 or "-" not in fields:
            continue
        separator = fields.index("-")
        optional = fields[6:separator]

        tags = {o.split(":", 1)[0] for o in optional}
        if "shared" in tags:
            propagation = "shared"
        elif "master" in tags:
            propagation = "slave"
        elif "unbindable" in tags:
            propagation = "unbindable"
        else:
            propagation = "private"

        entries.append({"mountpoint": _unescape(fields[4]), "propagation": propagation})
    return entries


def expected_propagation(mode: Propagation) -> str:
    """The propagation the kernel reports once ``mode`` is applied."""
    if mode in (Propagation.SHARED, Propagation.RSHARED):
        return "shared"
    if mode in (Propagation.SLAVE, Propagation.RSLAVE):
        return "slave"
    return "private"


class MountPreparer:
    """
    Bind-mounts directories onto themselves and sets their propagation mode.

    Mount state is host-global: ``is_prepared`` only reports what this run
    has verified, and every check re-reads the mount table.
    """
    def __init__(
        self,
        runner: CommandRunner,
        converter: Optional[SystemdConverter] = None,
        systemd: Optional[SystemdManager] = None,
        mountinfo_path: str = MOUNTINFO,
        list_mountpoints: Callable[[], Iterable[str]] = system_mountpoints,
    ):
        """
        :param runner: Executes mount commands.
        :param converter: Renders boot units; needed by ``install_boot_unit``.
        :param systemd: Installs boot units; needed by ``install_boot_unit``.
        :param mountinfo_path: Mount table with propagation fields.
        :param list_mountpoints: Returns the current mount points.
        """
        self.runner = runner
        self.converter = converter
        self.systemd = systemd
        self.mountinfo_path = mountinfo_path
        self.list_mountpoints = list_mountpoints
        self._prepared: Set[str] = set()

    def is_mountpoint(self, path: str) -> bool:
        path = os.path.normpath(path)
        return any(os.path.normpath(m) == path for m in self.list_mountpoints())

    def propagation(self, path: str) -> Optional[str]:
        """
        Propagation of the topmost mount at ``path``, or None if ``path`` is
        not a mount point.
        """
        path = os.path.normpath(path)
        try:
            with open(self.mountinfo_path, "r") as f:
                entries = parse_mountinfo(f.read())
        except OSError as e:
            raise MountError(path, f"cannot read mount table: {e}") from e

        found = None
        for entry in entries:
            if os.path.normpath(entry["mountpoint"]) == path:
                found = entry["propagation"]
        return found

    def ensure_shared(self, path: str, mode: Propagation = Propagation.RSHARED) -> None:
        """
        Makes ``path`` a mount point with the requested propagation.

        Idempotent: an already-correct mount is left alone.

        :param path: Absolute host directory.
        :param mode: Propagation to apply.
        :raises MountError: If the mount cannot be created or verified.
        """
        path = os.path.normpath(path)
        wanted = expected_propagation(mode)

        if path in self._prepared and self.propagation(path) == wanted:
            return

        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise MountError(path, f"cannot create directory: {e}") from e

        try:
            if not self.is_mountpoint(path):
                logger.info("Bind-mounting %s onto itself", path)
                self.runner.run(["mount", "--bind", path, path])
            self.runner.run(["mount", f"--make-{mode.value}", path])
        except CommandError as e:
            raise MountError(path, str(e)) from e

        observed = self.propagation(path)
        if observed != wanted:
            raise MountError(path, f"propagation is {observed or 'not mounted'}, expected {wanted}")

        self._prepared.add(path)
        logger.info("%s is a %s mount", path, wanted)

    def prepare(self, spec: MountSpec) -> None:
        self.ensure_shared(spec.host_path, spec.propagation_mode)

    def is_prepared(self, path: str) -> bool:
        return os.path.normpath(path) in self._prepared

    def release(self, path: str) -> bool:
        """
        Best-effort lazy unmount: FUSE filesystems stacked on the path first,
        then the bind mount itself.

        :return: True if ``path`` is no longer a mount point.
        """
        path = os.path.normpath(path)
        self._prepared.discard(path)

        for command in FUSE_UNMOUNT:
            if self.runner.which(command[0]) is None:
                continue
            if self.runner.run(command + [path], check=False).ok:
                logger.info("Unmounted FUSE filesystem at %s", path)
                break

        attempts = 0
        while self.is_mountpoint(path) and attempts < 3:
            result = self.runner.run(["umount", "-l", path], check=False)
            attempts += 1
            if not result.ok:
                logger.warning("umount -l %s failed: %s", path, result.stderr.strip())
                break

        released = not self.is_mountpoint(path)
        if not released:
            logger.warning("%s is still mounted", path)
        return released

    def install_boot_unit(self, spec: MountSpec, mounts: Optional[List[MountSpec]] = None) -> bool:
        """
        Installs ``<name>-mount.service`` and the runtime drop-in that orders
        the container runtime after it.

        :param spec: The mount to persist.
        :param mounts: Every managed mount, for the drop-in; defaults to ``[spec]``.
        :return: True if any unit file changed.
        """
        if self.converter is None or self.systemd is None:
            raise MountError(spec.host_path, "boot unit installation is not configured")

        unit_path = os.path.join(self.converter.config.systemd_dir, spec.unit_name)
        changed = self.systemd.write_unit(unit_path, self.converter.mount_unit(spec))
        changed |= self.systemd.write_unit(
            self.converter.dropin_path(), self.converter.runtime_dropin(mounts or [spec])
        )
        if changed:
            self.systemd.daemon_reload()
        self.systemd.enable([spec.unit_name], now=True)
        return changed

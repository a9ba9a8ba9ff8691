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
Soft and hard resets of the stack, and the database wipe.
"""
import logging
import os
from typing import Callable, List, Optional

from ..CONVERTERS.to_systemd import SystemdConverter, stack_unit_name
from ..exceptions import MountError, RstackError, TeardownError, ValidationError
from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.run_state import ResetReport
from .mount_preparer import MountPreparer
from .network_manager import NetworkManager
from .package_manager import PackageManager
from .service_orchestrator import ServiceOrchestrator
from .systemd_manager import SystemdManager
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

HARD_RESET_PHRASE = "WIPE-SERVER"
WIPE_DB_PHRASE = "WIPE-DB"

# Shown the phrase to type, returns what the operator typed.
ConfirmFn = Callable[[str], str]


class ResetAgent:
    """
    Returns the host to a known state.

    A soft reset restarts everything and keeps all data. A hard reset removes
    the stack, its data and the container runtime itself, and only runs after
    the operator types the confirmation phrase.
    """
    def __init__(
        self,
        orchestrator: ServiceOrchestrator,
        mounts: MountPreparer,
        systemd: SystemdManager,
        converter: SystemdConverter,
        networks: NetworkManager,
        volumes: VolumeManager,
        packages: PackageManager,
    ):
        self.orchestrator = orchestrator
        self.mounts = mounts
        self.systemd = systemd
        self.converter = converter
        self.networks = networks
        self.volumes = volumes
        self.packages = packages

    def reset(self, graph: DeploymentGraph, scope: str = "soft", confirm: Optional[ConfirmFn] = None,
              health_max_wait: Optional[float] = None) -> ResetReport:
        """
        :param graph: The stack.
        :param scope: ``soft`` or ``hard``.
        :param confirm: Asks for the confirmation phrase; required for ``hard``.
        :param health_max_wait: Passed on to the re-apply of a soft reset.
        :raises ValidationError: If a hard reset is not confirmed. Nothing
                                 has been changed in that case.
        """
        if scope == "soft":
            return self.soft_reset(graph, health_max_wait)
        if scope == "hard":
            self._require(confirm, HARD_RESET_PHRASE)
            return self.hard_reset(graph)
        raise ValidationError(f"Unknown reset scope: {scope}")

    def soft_reset(self, graph: DeploymentGraph, health_max_wait: Optional[float] = None) -> ResetReport:
        report = ResetReport(scope="soft")
        with self.orchestrator.locked():
            report.teardown = self.orchestrator.teardown(graph, mode="stop", release_mounts=True)
            for mount in graph.mounts:
                try:
                    self.mounts.prepare(mount)
                except MountError as e:
                    report.errors.append(str(e))
            report.apply = self.orchestrator.apply(graph, health_max_wait)
        logger.info(report.summary())
        return report

    def hard_reset(self, graph: DeploymentGraph) -> ResetReport:
        """
        Best-effort removal of everything rstack installed. Call ``reset``
        with ``scope="hard"`` to get the confirmation check.
        """
        report = ResetReport(scope="hard")
        with self.orchestrator.locked():
            report.teardown = self._step(report, "teardown",
                                         lambda: self.orchestrator.teardown(graph, mode="purge_data"))
            self._step(report, "remove units", lambda: self._remove_units(graph))
            failed = self._step(report, "remove networks", lambda: self.networks.remove(graph)) or []
            report.errors += [str(TeardownError("remove network", n)) for n in failed]
            if self._step(report, "remove media root", self.volumes.remove_root):
                report.wiped.append(self.volumes.config.media_root)
            report.errors += self._step(report, "purge runtime", self.packages.purge_runtime) or []
        logger.info(report.summary())
        return report

    def wipe_db(self, graph: DeploymentGraph, confirm: Optional[ConfirmFn] = None,
                reapply: bool = False, health_max_wait: Optional[float] = None) -> ResetReport:
        """
        Stops the stack and recreates empty data directories for every
        ``role: database`` service.

        :param reapply: Start the stack again afterwards.
        :raises ValidationError: If not confirmed, or no service is a database.
        """
        databases = [s for s in graph.services.values() if s.role == "database"]
        if not databases:
            raise ValidationError("No service is marked as a database")
        self._require(confirm, WIPE_DB_PHRASE)

        report = ResetReport(scope="wipe-db")
        with self.orchestrator.locked():
            report.teardown = self.orchestrator.teardown(graph, mode="stop", release_mounts=False)
            for svc in databases:
                try:
                    report.wiped += self.volumes.purge(svc, recreate=True)
                except OSError as e:
                    report.errors.append(str(TeardownError(f"{svc.name} data", str(e))))
            if reapply:
                report.apply = self.orchestrator.apply(graph, health_max_wait)
        logger.info(report.summary())
        return report

    def _require(self, confirm: Optional[ConfirmFn], phrase: str) -> None:
        typed = confirm(phrase) if confirm is not None else None
        if (typed or "").strip() != phrase:
            raise ValidationError(f"Not confirmed: type {phrase} exactly to proceed")

    def _remove_units(self, graph: DeploymentGraph) -> None:
        stack_units = [stack_unit_name(g) for g in reversed(graph.groups())]
        mount_units = [m.unit_name for m in graph.mounts]
        self.systemd.disable(stack_units + mount_units, now=True)

        paths: List[str] = [os.path.join(self.converter.config.systemd_dir, u) for u in stack_units + mount_units]
        paths.append(self.converter.dropin_path())
        for path in paths:
            self.systemd.remove_unit(path)
        self.systemd.daemon_reload()

    def _step(self, report: ResetReport, name: str, action):
        try:
            return action()
        except (RstackError, OSError) as e:
            logger.warning("%s failed: %s", name, e)
            report.errors.append(str(TeardownError(name, str(e))))
            return None

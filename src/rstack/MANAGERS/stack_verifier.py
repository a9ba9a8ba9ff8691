"""
Post-install verification of a running stack.
"""
import logging
import shlex

from ..CONVERTERS.to_systemd import stack_unit_name
from ..exceptions import MountError
from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.run_state import CheckReport
from ..RUNNERS.compose_engine import ComposeEngine
from .health_checker import HealthChecker
from .mount_preparer import MountPreparer, expected_propagation
from .network_manager import NetworkManager
from .systemd_manager import SystemdManager

logger = logging.getLogger(__name__)


class StackVerifier:
    """
    Read-only checks: boot units, containers, mount propagation, probes,
    mount visibility inside consumers and networks.
    """
    def __init__(self, engine: ComposeEngine, systemd: SystemdManager, mounts: MountPreparer,
                 health: HealthChecker, networks: NetworkManager):
        self.engine = engine
        self.systemd = systemd
        self.mounts = mounts
        self.health = health
        self.networks = networks

    def verify(self, graph: DeploymentGraph) -> CheckReport:
        report = CheckReport()

        units = [m.unit_name for m in graph.mounts] + [stack_unit_name(g) for g in graph.groups()]
        for unit in units:
            report.add(f"unit {unit}", self.systemd.is_active(unit))

        running = set()
        for name in graph.topological_order():
            svc = graph.services[name]
            info = self.engine.inspect(svc.container)
            ok = info is not None and info.running
            if ok:
                running.add(name)
            report.add(f"container {svc.container}", ok, info.status if info else "absent")

        for mount in graph.mounts:
            wanted = expected_propagation(mount.propagation_mode)
            try:
                observed = self.mounts.propagation(mount.host_path)
            except MountError as e:
                observed, detail = None, str(e)
            else:
                detail = f"got {observed or 'not mounted'}"
            report.add(f"propagation {mount.host_path}", observed == wanted, detail)

        for name in graph.topological_order():
            svc = graph.services[name]
            if svc.health_probe is None:
                continue
            passed, detail = self.health.check_once(svc, svc.health_probe)
            report.add(f"probe {name}", passed, detail)

        for mount in graph.mounts:
            for name in graph.services_using(mount):
                if name not in running:
                    continue
                svc = graph.services[name]
                for volume in svc.volumes:
                    if volume.host_path != mount.host_path:
                        continue
                    result = self.engine.exec(svc.container, f"ls {shlex.quote(volume.container_path)} >/dev/null")
                    report.add(f"{name} sees {volume.container_path}", result.ok)

        missing = self.networks.missing(graph)
        for network in graph.networks:
            report.add(f"network {network}", network not in missing)

        for check in report.checks:
            if not check.passed:
                logger.warning("FAIL %s %s", check.name, check.detail)
        return report

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
Orchestration for the whole stack: converging declared services onto the
container runtime in dependency order, and tearing them down again.
"""
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional, Set, Tuple

from ..CONVERTERS.to_compose import ComposeConverter
from ..exceptions import CommandError, ConvergenceError, MountError, TeardownError
from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.run_state import (
    ApplyReport,
    HealthStatus,
    RunState,
    ServiceState,
    TeardownReport,
)
from ..MODELS.service_definition import ServiceDefinition
from ..MODELS.tool_config import ToolConfig
from ..RUNNERS.compose_engine import ComposeEngine
from ..UTILS.run_lock import RunLock
from .environment_manager import EnvironmentManager
from .health_checker import HealthChecker
from .mount_preparer import MountPreparer
from .network_manager import NetworkManager
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

TEARDOWN_MODES = ("stop", "remove", "purge_data")


class ServiceOrchestrator:
    """
    Converges the runtime onto a DeploymentGraph.

    ``apply`` is idempotent: a second run against an unchanged graph leaves
    every container alone. Nothing is mutated until every service's
    environment resolves and the graph is known to be acyclic.
    """
    def __init__(
        self,
        config: ToolConfig,
        engine: ComposeEngine,
        mounts: MountPreparer,
        health: HealthChecker,
        environment: EnvironmentManager,
        networks: Optional[NetworkManager] = None,
        volumes: Optional[VolumeManager] = None,
        compose: Optional[ComposeConverter] = None,
    ):
        """
        Initializes the orchestrator.

        :param config: Tool configuration.
        :param engine: Container runtime adapter.
        :param mounts: Prepares managed mounts before dependents start.
        :param health: Waits for readiness after each start.
        :param environment: Resolves service environments.
        :param networks: Ensures shared networks exist.
        :param volumes: Creates the host directory layout.
        :param compose: Writes compose files.
        """
        self.config = config
        self.engine = engine
        self.mounts = mounts
        self.health = health
        self.environment = environment
        self.networks = networks or NetworkManager(engine)
        self.volumes = volumes or VolumeManager(config)
        self.compose = compose or ComposeConverter(config)
        self._lock = RunLock(config.lock_path)

    @contextmanager
    def locked(self):
        """
        Holds the run lock for the duration of the block. Re-entrant within
        one orchestrator, so composite operations can nest.
        """
        if self._lock.held:
            yield
            return
        with self._lock:
            yield

    def prepare(self, graph: DeploymentGraph) -> Dict[str, Dict[str, str]]:
        """
        Pre-mutation phase: checks the graph and resolves every environment.

        :return: Service name -> resolved environment.
        :raises ValidationError: On a cycle or an unresolvable binding.
        """
        order = graph.topological_order()
        contexts: Dict[str, Dict[str, str]] = {}
        return {name: self.environment.resolve(graph, graph.services[name], contexts) for name in order}

    def apply(self, graph: DeploymentGraph, health_max_wait: Optional[float] = None) -> ApplyReport:
        """
        Brings every service in ``graph`` to running-and-ready.

        Services start in topological order. A service whose dependency
        failed, or never became ready, is not started.

        :param graph: The stack to converge.
        :param health_max_wait: Overrides each probe's wait budget.
        :return: Per-service outcome and warnings.
        :raises ValidationError: Before any mutation, if the graph is invalid.
        :raises ConvergenceError: If a shared network cannot be created.
        """
        max_wait = health_max_wait if health_max_wait is not None else self.config.health_max_wait
        with self.locked():
            resolved = self.prepare(graph)
            order = list(resolved)
            hashes = {name: graph.services[name].config_hash(resolved[name]) for name in order}

            report = ApplyReport()
            for name in order:
                report.record(name, ServiceState.DEFINED)

            try:
                self.networks.ensure(graph)
            except CommandError as e:
                raise ConvergenceError("network", str(e)) from e
            self.volumes.prepare_layout(graph)
            self.compose.convert(graph, hashes)
            for name in order:
                self.environment.write_env_file(graph.services[name], resolved[name])

            blocked: Set[str] = set()
            for name in order:
                svc = graph.services[name]
                outcome = report.outcomes[name]

                waiting_on = [d for d in svc.depends_on if d in blocked]
                if waiting_on:
                    outcome.action = "skipped"
                    outcome.error = f"dependency not ready: {', '.join(waiting_on)}"
                    report.warnings.append(f"{name} not started: {outcome.error}")
                    blocked.add(name)
                    continue

                try:
                    for mount in graph.mounts_for(svc):
                        self.mounts.prepare(mount)
                except MountError as e:
                    logger.error("%s: %s", name, e)
                    outcome.error = str(e)
                    report.record(name, ServiceState.FAILED)
                    blocked.add(name)
                    continue

                report.record(name, ServiceState.STARTING)
                try:
                    outcome.action = self._converge(svc, hashes[name])
                except ConvergenceError as e:
                    logger.error("%s", e)
                    outcome.error = str(e)
                    report.record(name, ServiceState.FAILED)
                    blocked.add(name)
                    continue
                logger.info("%s: %s", name, outcome.action)

                outcome.health = self.health.wait_ready(svc, max_wait=max_wait)
                if outcome.health.status == HealthStatus.READY:
                    report.record(name, ServiceState.RUNNING_HEALTHY)
                else:
                    report.record(name, ServiceState.RUNNING_UNHEALTHY)
                    if outcome.health.status == HealthStatus.TIMED_OUT:
                        report.warnings.append(
                            f"{name} not ready after {outcome.health.waited:.0f}s"
                            + (f": {outcome.health.last_error}" if outcome.health.last_error else "")
                        )
                        blocked.add(name)

            logger.info(report.summary())
            return report

    def _converge(self, svc: ServiceDefinition, config_hash: str) -> str:
        try:
            info = self.engine.inspect(svc.container)
            if info is None:
                self.engine.up(svc)
                action = "created"
            else:
                image_id = self.engine.image_id(svc.image)
                image_changed = bool(image_id and info.image_id and image_id != info.image_id)
                if info.config_hash != config_hash or image_changed:
                    self.engine.up(svc, recreate=True)
                    action = "recreated"
                elif not info.running:
                    self.engine.start(svc.container)
                    action = "started"
                else:
                    return "unchanged"
        except CommandError as e:
            raise ConvergenceError(svc.name, str(e)) from e

        info = self.engine.inspect(svc.container)
        if info is None or not info.running:
            status = info.status if info else "absent"
            raise ConvergenceError(svc.name, f"container is {status} after {action}")
        return action

    def teardown(self, graph: DeploymentGraph, mode: str = "stop", release_mounts: bool = True) -> TeardownReport:
        """
        Stops services in reverse topological order.

        Never aborts on a single failure; every problem is collected.

        :param graph: The stack to tear down.
        :param mode: ``stop``, ``remove`` (also delete containers) or
                     ``purge_data`` (also delete data directories and named
                     volumes).
        :param release_mounts: Unmount managed mounts once every service
                               using them has stopped.
        :return: Final state per service, released mounts and errors.
        """
        if mode not in TEARDOWN_MODES:
            raise ValueError(f"Unknown teardown mode: {mode}")

        report = TeardownReport()
        named_volumes: List[Tuple[str, str]] = []
        with self.locked():
            report.order = graph.teardown_order()
            for name in report.order:
                svc = graph.services[name]
                info = self.engine.inspect(svc.container)
                if info is not None:
                    result = self.engine.stop(svc.container) if mode == "stop" else self.engine.remove(svc.container)
                    if not result.ok:
                        report.errors.append(str(TeardownError(name, result.stderr.strip() or "stop failed")))
                        report.states[name] = ServiceState.FAILED
                        continue
                    logger.info("%s: %s", name, "stopped" if mode == "stop" else "removed")
                report.states[name] = ServiceState.STOPPED

                if mode == "purge_data":
                    try:
                        self.volumes.purge(svc)
                        report.states[name] = ServiceState.PURGED
                    except OSError as e:
                        report.errors.append(str(TeardownError(f"{name} data", str(e))))
                    named_volumes += [(svc.group, v) for v in svc.named_volumes if (svc.group, v) not in named_volumes]

            # only once every container using them is gone
            for group, volume in named_volumes:
                result = self.engine.volume_remove(group, volume)
                if not result.ok:
                    report.errors.append(str(TeardownError(f"volume {volume}", result.stderr.strip() or "remove failed")))

            if release_mounts:
                self._release_mounts(graph, report)

        if report.errors:
            logger.warning("Teardown finished with %d error(s)", len(report.errors))
        return report

    def _release_mounts(self, graph: DeploymentGraph, report: TeardownReport) -> None:
        stopped = (ServiceState.STOPPED, ServiceState.PURGED)
        for mount in graph.mounts:
            running = [s for s in graph.services_using(mount) if report.states.get(s) not in stopped]
            if running:
                report.errors.append(str(TeardownError(
                    mount.host_path, f"kept mounted, still used by {', '.join(running)}"
                )))
                continue
            if self.mounts.release(mount.host_path):
                report.released_mounts.append(mount.host_path)
            else:
                report.errors.append(str(TeardownError(mount.host_path, "could not unmount")))

    def update(self, graph: DeploymentGraph, health_max_wait: Optional[float] = None) -> ApplyReport:
        """
        Pulls newer images, then applies; only services whose image changed
        are recreated.
        """
        with self.locked():
            self.prepare(graph)
            pull_errors: List[str] = []
            for name in graph.topological_order():
                try:
                    self.engine.pull(graph.services[name])
                except CommandError as e:
                    logger.warning("Pull failed for %s: %s", name, e)
                    pull_errors.append(f"{name}: pull failed")
            report = self.apply(graph, health_max_wait)
            report.warnings.extend(pull_errors)
            return report

    def status(self, graph: DeploymentGraph) -> List[RunState]:
        """
        Observed state of every service, read fresh from the runtime.
        """
        states = []
        for name in graph.topological_order():
            info = self.engine.inspect(graph.services[name].container)
            if info is None:
                states.append(RunState(service_name=name))
                continue
            states.append(RunState(
                service_name=name,
                container_status=info.status,
                health_status=info.health or "none",
                image_id=info.image_id,
                config_hash=info.config_hash,
            ))
        return states

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
Multi-step operator workflows built from the managers: install,
reconfigure, settings push and boot unit installation.
"""
import logging
import os
from typing import Iterable, List, Optional

from pydantic import SecretStr

from ..CONVERTERS.to_systemd import stack_unit_name
from ..exceptions import NotInstalledError
from ..MANAGERS.secret_provisioner import SecretProvisioner
from ..MANAGERS.settings_applier import SettingsEndpoint
from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.ranking import DEFAULT_PRESET, get_preset
from ..MODELS.run_state import ApplyReport, ServiceState, SettingsReport
from ..MODELS.secret import Discovered, Prompted, Required
from .components import Components

logger = logging.getLogger(__name__)

RANKING_KEY = "RANKING_PRESET"


def require_installed(c: Components, graph: DeploymentGraph) -> None:
    """
    :raises NotInstalledError: If no group of the stack has been written yet.
    """
    if not any(os.path.isfile(c.config.compose_file(g)) for g in graph.groups()):
        raise NotInstalledError(f"No stack found under {c.config.media_root}; run 'rstack install' first")


def provision_secrets(provisioner: SecretProvisioner, graph: DeploymentGraph,
                      reconfigure: bool = False, rotate: Iterable[str] = ()) -> List[str]:
    """
    Obtains every non-discovered secret of the stack.

    :param reconfigure: Ask again for operator-supplied values.
    :param rotate: Keys to regenerate even though a value exists.
    :return: Keys that were provisioned.
    """
    rotate = set(rotate)
    provisioned = []
    for request in graph.secrets:
        if isinstance(request.policy, Discovered):
            continue
        again = request.key in rotate or (
            reconfigure and isinstance(request.policy, (Prompted, Required))
        )
        if provisioner.provision(request, rotate=again) is not None:
            provisioned.append(request.key)
    return provisioned


def choose_ranking(c: Components, graph: DeploymentGraph, choice: Optional[str]) -> Optional[str]:
    """
    Persists the ranking preset for every group with a ranking-aware
    settings target. Without ``choice`` the stored preset is kept.

    :return: The preset in effect, or None if no service uses presets.
    """
    groups = [s.group for s in graph.services.values() if s.settings and s.settings.ranking]
    if not groups:
        return None
    if choice is not None:
        get_preset(choice)
    for group in groups:
        env_file = c.config.group_env_file(group)
        current = c.store.get(env_file, RANKING_KEY)
        c.store.set(env_file, RANKING_KEY, choice or current or DEFAULT_PRESET)
    return choice or c.store.get(c.config.group_env_file(groups[0]), RANKING_KEY)


def push_settings(c: Components, graph: DeploymentGraph, report: Optional[ApplyReport] = None) -> List[SettingsReport]:
    """
    Pushes declared settings into every service that exposes a settings API
    and is running (and, when ``report`` is given, came up ready).
    """
    results = []
    for name in graph.topological_order():
        svc = graph.services[name]
        if svc.settings is None:
            continue
        if report is not None:
            outcome = report.outcomes.get(name)
            if outcome is None or outcome.state != ServiceState.RUNNING_HEALTHY:
                logger.warning("Not pushing settings to %s: service is not ready", name)
                continue

        api_key = None
        if svc.settings.api_key_ref:
            api_key = c.environment.lookup(graph, svc.group, svc.settings.api_key_ref)
        endpoint = SettingsEndpoint(
            service=name,
            url=svc.settings.url,
            api_key=SecretStr(api_key) if api_key else None,
            api_key_header=svc.settings.api_key_header,
        )

        patch = c.environment.render_settings(graph, svc)
        if svc.settings.ranking:
            choice = c.environment.lookup(graph, svc.group, RANKING_KEY) or DEFAULT_PRESET
            patch.update(get_preset(choice).to_settings())
        if patch:
            results.append(c.settings.apply_settings(endpoint, patch))
    return results


def install_units(c: Components, graph: DeploymentGraph) -> bool:
    """
    Installs the mount boot units, the runtime drop-in and one unit per
    group, then enables them.

    :return: True if any unit file changed.
    """
    changed = False
    for mount in graph.mounts:
        changed |= c.mounts.install_boot_unit(mount, graph.mounts)

    group_units = [stack_unit_name(g) for g in graph.groups()]
    for path, content in c.units.render(graph).items():
        if os.path.basename(path) in group_units:
            changed |= c.systemd.write_unit(path, content)

    if changed:
        c.systemd.daemon_reload()
    c.systemd.enable(group_units)
    return changed


def start_units(c: Components, graph: DeploymentGraph) -> None:
    """Starts the group units so systemd tracks the running stack."""
    for group in graph.groups():
        c.systemd.start(stack_unit_name(group))


def deploy(c: Components, graph: DeploymentGraph, provisioner: SecretProvisioner,
           health_max_wait: Optional[float] = None) -> ApplyReport:
    """
    Applies the stack. Secrets discovered from a running service are
    obtained in between: the service they wait for is applied first, the
    secret is read back, then the whole stack is applied.
    """
    for request in graph.secrets:
        if not isinstance(request.policy, Discovered) or provisioner.current(request):
            continue
        first = c.orchestrator.apply(graph.subgraph([request.policy.after]), health_max_wait)
        if first.failed:
            logger.warning("Skipping discovery of %s: %s failed to start", request.key, request.policy.after)
            continue
        if provisioner.discover(request, c.config.discovery_max_wait) is None:
            logger.warning("%s was not found; dependent settings stay empty", request.key)
    return c.orchestrator.apply(graph, health_max_wait)


def install(c: Components, graph: DeploymentGraph, provisioner: SecretProvisioner,
            ranking: Optional[str] = None, install_runtime: bool = True,
            health_max_wait: Optional[float] = None):
    """
    First-time (and repeatable) installation of the whole stack. Operator
    input is collected and every environment binding resolved before
    packages, mounts or containers are touched.

    :return: The apply report and the settings reports.
    """
    with c.orchestrator.locked():
        provision_secrets(provisioner, graph)
        choose_ranking(c, graph, ranking)
        c.orchestrator.prepare(graph)

        if install_runtime:
            c.packages.ensure_runtime()
        c.volumes.prepare_layout(graph)
        for mount in graph.mounts:
            c.mounts.prepare(mount)
        install_units(c, graph)

        report = deploy(c, graph, provisioner, health_max_wait)
        if report.ready:
            start_units(c, graph)
        else:
            logger.warning("Stack units are enabled but not started: the stack is not ready")
        return report, push_settings(c, graph, report)


def reconfigure(c: Components, graph: DeploymentGraph, provisioner: SecretProvisioner,
                ranking: Optional[str] = None, rotate: Iterable[str] = (),
                health_max_wait: Optional[float] = None):
    """
    Asks for operator values again, rotates the named generated secrets and
    re-applies; only services whose resolved configuration changed are
    recreated.
    """
    require_installed(c, graph)
    with c.orchestrator.locked():
        provision_secrets(provisioner, graph, reconfigure=True, rotate=rotate)
        choose_ranking(c, graph, ranking)
        c.orchestrator.prepare(graph)
        report = deploy(c, graph, provisioner, health_max_wait)
        return report, push_settings(c, graph, report)

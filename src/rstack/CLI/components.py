"""
Wiring of rstack's managers for one CLI invocation.
"""
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

from ..CONVERTERS.to_compose import ComposeConverter
from ..CONVERTERS.to_systemd import SystemdConverter
from ..MANAGERS.config_store import ConfigStore
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.health_checker import HealthChecker
from ..MANAGERS.mount_preparer import MOUNTINFO, MountPreparer, system_mountpoints
from ..MANAGERS.network_manager import NetworkManager
from ..MANAGERS.package_manager import PackageManager
from ..MANAGERS.reset_agent import ResetAgent
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.settings_applier import SettingsApplier
from ..MANAGERS.stack_verifier import StackVerifier
from ..MANAGERS.systemd_manager import SystemdManager
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.tool_config import ToolConfig
from ..RUNNERS.command_runner import CommandRunner
from ..RUNNERS.compose_engine import ComposeEngine
from ..UTILS import http_client


@dataclass
class Components:
    config: ToolConfig
    runner: CommandRunner
    store: ConfigStore
    engine: ComposeEngine
    systemd: SystemdManager
    units: SystemdConverter
    compose: ComposeConverter
    mounts: MountPreparer
    health: HealthChecker
    environment: EnvironmentManager
    networks: NetworkManager
    volumes: VolumeManager
    orchestrator: ServiceOrchestrator
    settings: SettingsApplier
    packages: PackageManager
    verifier: StackVerifier
    resetter: ResetAgent
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def build(
        cls,
        config: ToolConfig,
        runner: Optional[CommandRunner] = None,
        mountinfo_path: str = MOUNTINFO,
        list_mountpoints: Callable[[], Iterable[str]] = system_mountpoints,
        sleep: Callable[[float], None] = time.sleep,
        http: Callable[..., http_client.HttpResponse] = http_client.request,
        owner: Optional[Tuple[int, int]] = None,
    ) -> "Components":
        """
        Builds every manager around one command runner.

        :param config: Tool configuration.
        :param runner: Host command boundary.
        :param mountinfo_path: Mount table read for propagation checks.
        :param list_mountpoints: Current mount points.
        :param sleep: Sleep used by every wait loop.
        :param http: HTTP transport for probes and settings.
        :param owner: uid/gid for user-facing data directories.
        """
        runner = runner or CommandRunner()
        store = ConfigStore()
        engine = ComposeEngine(runner, config)
        systemd = SystemdManager(runner)
        units = SystemdConverter(config)
        compose = ComposeConverter(config)
        mounts = MountPreparer(runner, units, systemd, mountinfo_path, list_mountpoints)
        health = HealthChecker(engine, sleep=sleep, http=http)
        environment = EnvironmentManager(config, store)
        networks = NetworkManager(engine)
        volumes = VolumeManager(config, owner)
        orchestrator = ServiceOrchestrator(config, engine, mounts, health, environment,
                                           networks, volumes, compose)
        packages = PackageManager(runner, config.apt_keyring, config.apt_sources_list, config.os_release)
        return cls(
            config=config,
            runner=runner,
            store=store,
            engine=engine,
            systemd=systemd,
            units=units,
            compose=compose,
            mounts=mounts,
            health=health,
            environment=environment,
            networks=networks,
            volumes=volumes,
            orchestrator=orchestrator,
            settings=SettingsApplier(config.snapshot_dir, transport=http),
            packages=packages,
            verifier=StackVerifier(engine, systemd, mounts, health, networks),
            resetter=ResetAgent(orchestrator, mounts, systemd, units, networks, volumes, packages),
            sleep=sleep,
        )

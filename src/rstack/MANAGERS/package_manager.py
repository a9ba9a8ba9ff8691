"""
Installation and removal of the container runtime from Docker's apt
repository.
"""
import logging
import os
from typing import List, Optional

from ..exceptions import CommandError, TeardownError
from ..RUNNERS.command_runner import CommandRunner

logger = logging.getLogger(__name__)

RUNTIME_PACKAGES = [
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
]
PREREQUISITES = ["ca-certificates", "curl", "gnupg", "lsb-release"]
EXTRA_PACKAGES = ["fuse3", "util-linux"]

KEY_URL = "https://download.docker.com/linux/debian/gpg"
KEYRING = "/etc/apt/keyrings/docker.gpg"
SOURCES_LIST = "/etc/apt/sources.list.d/docker.list"
OS_RELEASE = "/etc/os-release"
RUNTIME_DATA_DIRS = ["/var/lib/docker", "/var/lib/containerd"]


class PackageManager:
    """
    Drives apt-get and dpkg for the runtime packages.
    """
    def __init__(self, runner: CommandRunner, keyring: str = KEYRING, sources_list: str = SOURCES_LIST,
                 os_release: str = OS_RELEASE):
        self.runner = runner
        self.keyring = keyring
        self.sources_list = sources_list
        self.os_release = os_release

    def _apt(self, args: List[str], check: bool = True):
        return self.runner.run(["env", "DEBIAN_FRONTEND=noninteractive", "apt-get"] + args, check=check)

    def architecture(self) -> str:
        return self.runner.run(["dpkg", "--print-architecture"]).stdout.strip()

    def codename(self) -> Optional[str]:
        if not os.path.isfile(self.os_release):
            return None
        with open(self.os_release, "r") as f:
            for line in f:
                key, _, value = line.strip().partition("=")
                if key == "VERSION_CODENAME":
                    return value.strip('"') or None
        return None

    def repository_line(self, arch: str, codename: str) -> str:
        return (
            f"deb [arch={arch} signed-by={self.keyring}] "
            f"https://download.docker.com/linux/debian {codename} stable\n"
        )

    def add_repository(self) -> None:
        """
        Adds Docker's signing key and apt source. Leaves existing files alone.
        """
        codename = self.codename()
        if not codename:
            raise CommandError(["lsb_release"], 1, "cannot determine distribution codename")

        self._apt(["update"])
        self._apt(["install", "-y"] + PREREQUISITES)
        if not os.path.isfile(self.keyring):
            os.makedirs(os.path.dirname(self.keyring), mode=0o755, exist_ok=True)
            key = self.runner.run(["curl", "-fsSL", KEY_URL]).stdout
            self.runner.run(["gpg", "--dearmor", "-o", self.keyring], input_text=key)
            os.chmod(self.keyring, 0o644)

        line = self.repository_line(self.architecture(), codename)
        if os.path.isfile(self.sources_list):
            with open(self.sources_list, "r") as f:
                if f.read() == line:
                    return
        with open(self.sources_list, "w") as f:
            f.write(line)
        logger.info("Added Docker apt repository for %s", codename)

    def ensure_runtime(self) -> bool:
        """
        Installs the runtime and compose plugin unless ``docker compose``
        already works.

        :return: True if packages were installed.
        """
        if self.runner.run(["docker", "compose", "version"], check=False).ok:
            logger.debug("docker compose is available")
            return False
        logger.info("Installing Docker Engine and the compose plugin")
        self.add_repository()
        self._apt(["update"])
        self._apt(["install", "-y"] + RUNTIME_PACKAGES + EXTRA_PACKAGES)
        self.runner.run(["systemctl", "enable", "--now", "docker"])
        return True

    def purge_runtime(self) -> List[str]:
        """
        Removes the runtime packages, their data and the apt repository.
        Every step runs even if an earlier one failed.

        :return: Errors from failed steps.
        """
        errors: List[str] = []

        def step(name: str, command: List[str]) -> None:
            result = self.runner.run(command, check=False)
            if not result.ok:
                errors.append(str(TeardownError(name, result.stderr.strip() or f"exit {result.returncode}")))

        step("stop docker", ["systemctl", "stop", "docker", "docker.socket", "containerd"])
        step("purge packages", ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "purge", "-y"] + RUNTIME_PACKAGES)
        for path in RUNTIME_DATA_DIRS:
            step(f"remove {path}", ["rm", "-rf", path])
        for path in (self.sources_list, self.keyring):
            if os.path.exists(path):
                try:
                    os.remove(path)
                except OSError as e:
                    errors.append(str(TeardownError(f"remove {path}", str(e))))
        step("autoremove", ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "autoremove", "-y"])
        return errors

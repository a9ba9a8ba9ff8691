"""
Thin adapter over systemctl for installing and driving unit files.
"""
import logging
import os
from typing import List

from ..RUNNERS.command_runner import CommandRunner

logger = logging.getLogger(__name__)


class SystemdManager:
    """
    Installs unit files and runs systemctl verbs.
    """
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def write_unit(self, path: str, content: str) -> bool:
        """
        Writes a unit file if its content differs.

        :return: True if the file changed (a daemon-reload is then needed).
        """
        if os.path.isfile(path):
            with open(path, "r") as f:
                if f.read() == content:
                    return False
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            f.write(content)
        logger.info("Wrote unit %s", path)
        return True

    def remove_unit(self, path: str) -> bool:
        if not os.path.exists(path):
            return False
        os.remove(path)
        parent = os.path.dirname(path)
        if parent.endswith(".d") and not os.listdir(parent):
            os.rmdir(parent)
        logger.info("Removed unit %s", path)
        return True

    def daemon_reload(self) -> None:
        self.runner.run(["systemctl", "daemon-reload"])

    def enable(self, units: List[str], now: bool = False) -> None:
        if units:
            self.runner.run(["systemctl", "enable"] + (["--now"] if now else []) + list(units))

    def disable(self, units: List[str], now: bool = False) -> None:
        if units:
            self.runner.run(["systemctl", "disable"] + (["--now"] if now else []) + list(units), check=False)

    def start(self, unit: str) -> None:
        self.runner.run(["systemctl", "start", unit])

    def stop(self, unit: str) -> None:
        self.runner.run(["systemctl", "stop", unit], check=False)

    def is_active(self, unit: str) -> bool:
        return self.runner.run(["systemctl", "is-active", "--quiet", unit], check=False).ok

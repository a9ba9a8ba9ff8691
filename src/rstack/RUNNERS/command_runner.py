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
Execution of host commands (docker, mount, systemctl, apt-get) with captured
output. Every external tool rstack drives goes through this boundary.
"""
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..exceptions import CommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one command."""

    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """
    Runs a single host command at a time.
    """
    def __init__(self, env: Optional[Dict[str, str]] = None, dry_run: bool = False):
        """
        Initializes the command runner.

        Args:
            env (Optional[Dict[str, str]]): Extra environment for every command.
            dry_run (bool): Log commands instead of executing them.
        """
        self.env = env or {}
        self.dry_run = dry_run

    def run(self,
            command: List[str],
            check: bool = True,
            cwd: Optional[str] = None,
            timeout: Optional[float] = None,
            input_text: Optional[str] = None) -> CommandResult:
        """
        Runs a command to completion.

        Args:
            command (List[str]): Command and arguments to execute.
            check (bool): Raise CommandError on a non-zero exit status.
            cwd (Optional[str]): Directory to run the command in.
            timeout (Optional[float]): Seconds before the command is killed.
            input_text (Optional[str]): Data written to the command's stdin.

        Returns:
            CommandResult: Exit status and captured output.
        """
        logger.debug("Running: %s", " ".join(command))
        if self.dry_run:
            logger.info("[dry-run] %s", " ".join(command))
            return CommandResult(command=command, returncode=0)

        env = dict(os.environ)
        env.update(self.env)
        try:
            completed = subprocess.run(
                command,
                cwd=cwd,
                env=env,
                input=input_text,
                capture_output=True,
                timeout=timeout,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except FileNotFoundError:
            result = CommandResult(command=command, returncode=127, stderr=f"{command[0]}: not found")
        except subprocess.TimeoutExpired:
            result = CommandResult(command=command, returncode=124, stderr="timed out")
        else:
            result = CommandResult(
                command=command,
                returncode=completed.returncode,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
            )

        if check and not result.ok:
            raise CommandError(command, result.returncode, result.stderr)
        return result

    def which(self, program: str) -> Optional[str]:
        """
        Returns the full path of a program on PATH, if installed.
        """
        return shutil.which(program)

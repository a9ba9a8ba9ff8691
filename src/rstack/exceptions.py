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
Error taxonomy shared by every rstack component.

Validation and mount errors abort before (or instead of) mutation, convergence
errors abort the affected subtree, and health, settings and teardown errors are
collected into reports rather than propagated.
"""
from typing import List, Optional


class RstackError(Exception):
    """Base class for all rstack errors."""


class ValidationError(RstackError):
    """Bad operator input or an inconsistent stack definition."""


class CycleError(ValidationError):
    """The deployment graph contains a dependency cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class MountError(RstackError):
    """A managed mount could not be given the requested propagation."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class ConvergenceError(RstackError):
    """The runtime engine failed to create or start a declared service."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class HealthTimeout(RstackError):
    """A readiness probe never succeeded within its budget."""

    def __init__(self, service: str, waited: float, last_error: Optional[str] = None):
        self.service = service
        self.waited = waited
        self.last_error = last_error
        detail = f" ({last_error})" if last_error else ""
        super().__init__(f"{service} not ready after {waited:.0f}s{detail}")


class SettingsPushError(RstackError):
    """A single settings key could not be written to a service."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"{key}: {message}")


class TeardownError(RstackError):
    """One step of a best-effort teardown failed."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"{step}: {message}")


class CommandError(RstackError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: List[str], returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(
            f"'{' '.join(command)}' exited with {returncode}" + (f": {tail}" if tail else "")
        )


class LockError(RstackError):
    """Another rstack invocation holds the run lock."""


class NotInstalledError(RstackError):
    """An operation needs a prior install that is not present."""

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
Readiness probing for services: HTTP endpoints, TCP ports and commands run
inside the container.
"""
import http.client
import logging
import socket
import time
from typing import Callable, Optional, Tuple

from ..MODELS.run_state import HealthResult, HealthStatus
from ..MODELS.service_definition import HealthProbe, ProbeKind, ServiceDefinition
from ..RUNNERS.compose_engine import ComposeEngine
from ..UTILS import http_client
from ..UTILS.retry import retry

logger = logging.getLogger(__name__)


class HealthChecker:
    """
    Polls a service's probe until it passes or the wait budget runs out.

    A service that is running but failing its probe is reported as
    ``TIMED_OUT``; it is never reported ready.
    """

    def __init__(
        self,
        engine: Optional[ComposeEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
        http: Callable[..., http_client.HttpResponse] = http_client.request,
    ):
        """
        Initializes the health checker.

        :param engine: Runs ``exec`` probes inside containers.
        :param sleep: Sleep between attempts.
        :param http: HTTP transport.
        """
        self.engine = engine
        self.sleep = sleep
        self.http = http

    def check_once(self, service: ServiceDefinition, probe: HealthProbe) -> Tuple[bool, str]:
        """
        Runs a probe once.

        :return: Whether it passed, and a short detail string.
        """
        try:
            if probe.kind == ProbeKind.HTTP:
                return self._check_http(probe)
            if probe.kind == ProbeKind.TCP:
                return self._check_tcp(probe)
            return self._check_exec(service, probe)
        except (OSError, ValueError, http.client.HTTPException) as e:
            return False, str(e) or type(e).__name__

    def wait_ready(self, service: ServiceDefinition, probe: Optional[HealthProbe] = None,
                   max_wait: Optional[float] = None) -> HealthResult:
        """
        Waits until ``probe`` passes. Never raises.

        :param service: The service to probe.
        :param probe: Defaults to the service's own probe.
        :param max_wait: Overall budget; defaults to the probe's own budget.
        :return: READY, TIMED_OUT or NONE when there is nothing to probe.
        """
        probe = probe or service.health_probe
        if probe is None:
            return HealthResult(service=service.name, status=HealthStatus.NONE)

        budget = probe.budget if max_wait is None else max_wait
        if probe.start_period and budget > probe.start_period:
            self.sleep(probe.start_period)
            budget -= probe.start_period

        last = {"detail": None}

        def _probe() -> bool:
            passed, detail = self.check_once(service, probe)
            last["detail"] = detail
            return passed

        attempts = max(1, int(budget / probe.interval) + 1) if probe.interval else probe.retries
        outcome = retry(_probe, attempts=attempts, backoff=probe.interval, max_wait=budget,
                        sleep=self.sleep, label=f"{service.name} health")
        if outcome.success:
            logger.info("%s is ready after %d attempt(s)", service.name, outcome.attempts)
            return HealthResult(service=service.name, status=HealthStatus.READY,
                                attempts=outcome.attempts, waited=outcome.elapsed)

        error = outcome.last_error or last["detail"]
        logger.warning("%s not ready after %d attempt(s): %s", service.name, outcome.attempts, error)
        return HealthResult(service=service.name, status=HealthStatus.TIMED_OUT,
                            attempts=outcome.attempts, waited=outcome.elapsed, last_error=error)

    def _check_http(self, probe: HealthProbe) -> Tuple[bool, str]:
        response = self.http("GET", probe.target, timeout=probe.timeout)
        if probe.expect_status is not None:
            passed = response.status == probe.expect_status
        else:
            passed = response.ok
        if passed and probe.expect_body is not None:
            passed = probe.expect_body in response.body
        return passed, f"HTTP {response.status}"

    def _check_tcp(self, probe: HealthProbe) -> Tuple[bool, str]:
        host, _, port = probe.target.rpartition(":")
        with socket.create_connection((host or "127.0.0.1", int(port)), timeout=probe.timeout):
            return True, "connected"

    def _check_exec(self, service: ServiceDefinition, probe: HealthProbe) -> Tuple[bool, str]:
        if self.engine is None:
            return False, "no container engine for exec probe"
        result = self.engine.exec(service.container, probe.target, timeout=probe.timeout)
        detail = (result.stderr or result.stdout).strip().splitlines()
        return result.ok, detail[-1] if detail else f"exit {result.returncode}"

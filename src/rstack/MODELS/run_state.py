"""
Models describing observed runtime state and per-operation reports.
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ServiceState(str, Enum):
    """
    Lifecycle of one service within an operation.
    """
    UNDEFINED = "undefined"
    DEFINED = "defined"
    STARTING = "starting"
    RUNNING_UNHEALTHY = "running_unhealthy"
    RUNNING_HEALTHY = "running_healthy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    PURGED = "purged"
    FAILED = "failed"


class HealthStatus(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    NONE = "none"  # No probe declared


class HealthResult(BaseModel):
    service: str
    status: HealthStatus
    attempts: int = 0
    waited: float = 0.0
    last_error: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.status == HealthStatus.READY


class RunState(BaseModel):
    """
    Observed snapshot of one service. Derived from the runtime on every query,
    never cached across operations.
    """
    service_name: str
    container_status: str = "absent"
    health_status: str = "none"
    image_id: Optional[str] = None
    config_hash: Optional[str] = None


class ServiceOutcome(BaseModel):
    """
    What an operation did to one service.
    """
    service: str
    state: ServiceState = ServiceState.DEFINED
    action: Optional[str] = None  # created, recreated, started, unchanged, skipped
    health: Optional[HealthResult] = None
    error: Optional[str] = None


class Transition(BaseModel):
    service: str
    state: ServiceState


class ApplyReport(BaseModel):
    """
    Result of ``Orchestrator.apply``.
    """
    outcomes: Dict[str, ServiceOutcome] = Field(default_factory=dict)
    transitions: List[Transition] = []
    warnings: List[str] = []

    def record(self, service: str, state: ServiceState) -> None:
        outcome = self.outcomes.setdefault(service, ServiceOutcome(service=service))
        outcome.state = state
        self.transitions.append(Transition(service=service, state=state))

    @property
    def failed(self) -> List[str]:
        return [n for n, o in self.outcomes.items() if o.state == ServiceState.FAILED]

    @property
    def ready(self) -> bool:
        """True only when every service is running and every probe passed."""
        for outcome in self.outcomes.values():
            if outcome.state != ServiceState.RUNNING_HEALTHY:
                if outcome.state == ServiceState.RUNNING_UNHEALTHY and (
                    outcome.health is None or outcome.health.status == HealthStatus.NONE
                ):
                    continue
                return False
        return True

    def summary(self) -> str:
        if self.ready:
            return f"✅ APPLY SUMMARY: {len(self.outcomes)} service(s) ready."
        return (
            f"⚠️ APPLY SUMMARY: {len(self.failed)} failed, "
            f"{len(self.warnings)} warning(s)."
        )


class TeardownReport(BaseModel):
    """
    Result of ``Orchestrator.teardown``; errors never abort the walk.
    """
    states: Dict[str, ServiceState] = Field(default_factory=dict)
    order: List[str] = []
    released_mounts: List[str] = []
    errors: List[str] = []

    @property
    def ok(self) -> bool:
        return not self.errors


class CheckResult(BaseModel):
    name: str
    passed: bool
    detail: str = ""


class CheckReport(BaseModel):
    """
    Aggregate pass/fail of a verification run.
    """
    checks: List[CheckResult] = []

    def add(self, name: str, passed: bool, detail: str = "") -> None:
        self.checks.append(CheckResult(name=name, passed=passed, detail=detail))

    @property
    def ok(self) -> bool:
        return all(c.passed for c in self.checks)

    def summary(self) -> str:
        if self.ok:
            return "✅ TEST SUMMARY: Looks good."
        return "⚠️ TEST SUMMARY: Issues detected."


class SettingsReport(BaseModel):
    """
    Result of one settings push. Per-key failures never abort the push.
    """
    service: str
    pushed: List[str] = []
    unchanged: List[str] = []
    errors: List[str] = []
    clobbered: List[str] = []
    snapshot_path: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.errors and not self.clobbered


class ResetReport(BaseModel):
    """
    Result of a reset or wipe; every step is best-effort.
    """
    scope: str
    teardown: Optional[TeardownReport] = None
    apply: Optional[ApplyReport] = None
    wiped: List[str] = []
    errors: List[str] = []

    @property
    def ok(self) -> bool:
        if self.errors or (self.teardown is not None and not self.teardown.ok):
            return False
        return self.apply is None or self.apply.ready

    def summary(self) -> str:
        if self.ok:
            return f"✅ RESET SUMMARY: {self.scope} reset complete."
        count = len(self.errors) + (len(self.teardown.errors) if self.teardown else 0)
        return f"⚠️ RESET SUMMARY: {self.scope} reset finished with {count} error(s)."

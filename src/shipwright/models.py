"""Shared domain models for shipwright."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from shipwright.constants import (
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    DEFAULT_ENDPOINT_ATTEMPTS,
    DEFAULT_ENDPOINT_OUTPUT,
    DEFAULT_HEALTH_ATTEMPTS,
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    DEFAULT_PARAMETER_PREFIX,
    DEFAULT_REPOSITORY,
    DEFAULT_SERVICE_TYPE,
    SMOKE_TEST_CONTAINER_PORT,
)


class RunMode(str, Enum):
    DEPLOY = "deploy"
    DESTROY = "destroy"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    DESTROYED = "destroyed"


class Stage(str, Enum):
    INIT = "init"
    VALIDATE_PARAMS = "validate_params"
    RESOLVE_CONFIG = "resolve_config"
    ENSURE_REPOSITORY = "ensure_repository"
    BUILD = "build"
    SMOKE_TEST = "smoke_test"
    AUTHENTICATE = "authenticate"
    PUSH = "push"
    UPDATE_INFRA_CONFIG = "update_infra_config"
    PLAN = "plan"
    APPROVE = "approve"
    APPLY = "apply"
    VERIFY_HEALTH = "verify_health"
    STAGED_DESTROY = "staged_destroy"
    FULL_DESTROY = "full_destroy"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.DONE, Stage.FAILED)


class StageStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ConfigSource(str, Enum):
    REMOTE = "remote"
    PARAMETER = "parameter"
    DEFAULT = "default"


class HealthVerdict(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    INCONCLUSIVE = "inconclusive"


class HealthFailurePolicy(str, Enum):
    WARN = "warn"
    ROLLBACK = "rollback"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class RunParameters:
    """Caller-supplied inputs. Never mutated once the run starts."""

    account_id: str
    region: str
    cluster_name: str = ""
    image_tag: Optional[str] = None
    test_port: int = 0
    destroy: bool = False
    build_number: Optional[str] = None
    commit: Optional[str] = None
    source_path: str = "."
    repository_name: str = DEFAULT_REPOSITORY
    service_type: str = DEFAULT_SERVICE_TYPE


@dataclass(frozen=True)
class ConfigValue:
    key: str
    value: str
    source: ConfigSource
    error: Optional[str] = None

    @property
    def used_default(self) -> bool:
        return self.source == ConfigSource.DEFAULT


class ResolvedConfig:
    """Write-once snapshot of resolved configuration values."""

    def __init__(self):
        self._values: Dict[str, ConfigValue] = {}
        self._frozen = False

    def set(self, config_value: ConfigValue):
        if self._frozen:
            raise RuntimeError("Resolved configuration is frozen.")
        if config_value.key in self._values:
            raise RuntimeError(f"Configuration key '{config_value.key}' is already resolved.")
        self._values[config_value.key] = config_value

    def freeze(self) -> "ResolvedConfig":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, key: str) -> ConfigValue:
        return self._values[key]

    def value(self, key: str) -> str:
        return self._values[key].value

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[ConfigValue]:
        return iter(self._values.values())

    def __len__(self) -> int:
        return len(self._values)

    def as_dict(self) -> Dict[str, Dict[str, Optional[str]]]:
        return {
            key: {"value": item.value, "source": item.source.value, "error": item.error}
            for key, item in self._values.items()
        }


@dataclass(frozen=True)
class Artifact:
    repository: str
    tag: str
    registry_uri: str

    @property
    def image_ref(self) -> str:
        return f"{self.registry_uri}:{self.tag}"

    @property
    def registry_host(self) -> str:
        return self.registry_uri.split("/", 1)[0]


@dataclass(frozen=True)
class HealthCheckResult:
    attempts: int
    verdict: HealthVerdict
    last_status_code: Optional[int] = None
    last_error: Optional[str] = None
    waited_seconds: float = 0.0

    @property
    def healthy(self) -> bool:
        return self.verdict == HealthVerdict.HEALTHY


@dataclass(frozen=True)
class StageOutcome:
    stage: Stage
    status: StageStatus
    error: Optional[str] = None
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class PlanHandle:
    plan_file: str
    var_file: str
    has_changes: bool = True


@dataclass(frozen=True)
class InfraParameters:
    """Opaque variable set handed to the infrastructure tool."""

    image_uri: str
    cluster_name: str
    region: str
    service_type: str
    account_id: str

    def as_variables(self) -> Dict[str, str]:
        return {
            "image_uri": self.image_uri,
            "cluster_name": self.cluster_name,
            "region": self.region,
            "service_type": self.service_type,
            "account_id": self.account_id,
        }


@dataclass
class PipelineRun:
    """State of one pipeline invocation, owned by the orchestrator."""

    run_id: str
    parameters: RunParameters
    mode: RunMode
    state: Stage = Stage.INIT
    status: RunStatus = RunStatus.RUNNING
    config: ResolvedConfig = field(default_factory=ResolvedConfig)
    artifact: Optional[Artifact] = None
    plan: Optional[PlanHandle] = None
    health: Optional[HealthCheckResult] = None
    outcomes: List[StageOutcome] = field(default_factory=list)
    infrastructure_changed: bool = False
    rollback_attempted: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class PipelineSettings:
    """Operational knobs for a run. Independent of the run's identity."""

    infra_dir: str = "infra"
    destroy_targets: Tuple[str, ...] = ()
    health_url: Optional[str] = None
    health_path: Optional[str] = None
    endpoint_output: str = DEFAULT_ENDPOINT_OUTPUT
    health_attempts: int = DEFAULT_HEALTH_ATTEMPTS
    health_interval: float = DEFAULT_HEALTH_INTERVAL_SECONDS
    endpoint_attempts: int = DEFAULT_ENDPOINT_ATTEMPTS
    container_port: int = SMOKE_TEST_CONTAINER_PORT
    approval_timeout: float = DEFAULT_APPROVAL_TIMEOUT_SECONDS
    auto_approve: bool = False
    health_failure_policy: HealthFailurePolicy = HealthFailurePolicy.WARN
    remote_config: bool = True
    parameter_prefix: str = DEFAULT_PARAMETER_PREFIX
    report_file: Optional[str] = None
    retry_count: int = 1
    retry_backoff_seconds: float = 2.0
    command_timeout: Optional[float] = None
    dry_run: bool = False

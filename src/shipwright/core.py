import logging
import time
import uuid
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable, Dict, Optional, Tuple

from rich.console import Console
from rich.table import Table

from .errors import ApplyError, HealthCheckExhausted, PipelineError
from .errors_catalog import actionable_error
from .models import (
    ApprovalDecision,
    Artifact,
    HealthCheckResult,
    HealthFailurePolicy,
    HealthVerdict,
    InfraParameters,
    PipelineRun,
    PipelineSettings,
    RunMode,
    RunParameters,
    RunStatus,
    Stage,
    StageOutcome,
    StageStatus,
)
from .services.approval import AutoApprovalGate, ConsoleApprovalGate
from .services.builder import ArtifactBuilder
from .services.command_runner import CommandRunner
from .services.config_resolver import ConfigResolver, ParameterStore
from .services.docker_runtime import DockerRuntimeService
from .services.health import HealthChecker
from .services.infrastructure import InfrastructureController
from .services.registry import ArtifactRegistryClient
from .services.report import RunReportService
from .services.rollback import RollbackManager
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("shipwright")


@dataclass
class PipelineServices:
    """Collaborators the orchestrator drives. Tests swap any of them for fakes."""

    resolver: ConfigResolver
    registry: ArtifactRegistryClient
    builder: ArtifactBuilder
    infrastructure: InfrastructureController
    health_checker: HealthChecker
    rollback_manager: RollbackManager
    approval_gate: Any
    validation: ValidationService
    report: RunReportService


def build_services(parameters: RunParameters, settings: PipelineSettings) -> PipelineServices:
    command_runner = CommandRunner(logger=logger, default_timeout=settings.command_timeout)
    run_cmd = command_runner.run

    store = None
    if settings.remote_config:
        store = ParameterStore(run_cmd, region=parameters.region, prefix=settings.parameter_prefix)

    docker_runtime = DockerRuntimeService(logger=logger, console=console, run_cmd=run_cmd)
    infrastructure = InfrastructureController(
        run_cmd,
        logger=logger,
        console=console,
        infra_dir=settings.infra_dir,
    )

    if settings.auto_approve:
        approval_gate = AutoApprovalGate(logger=logger)
    else:
        approval_gate = ConsoleApprovalGate(logger=logger, console=console)

    return PipelineServices(
        resolver=ConfigResolver(store, logger=logger),
        registry=ArtifactRegistryClient(
            run_cmd,
            logger=logger,
            console=console,
            region=parameters.region,
            retry_count=settings.retry_count,
            retry_backoff_seconds=settings.retry_backoff_seconds,
        ),
        builder=ArtifactBuilder(
            run_cmd,
            docker_runtime,
            logger=logger,
            console=console,
            container_port=settings.container_port,
        ),
        infrastructure=infrastructure,
        health_checker=HealthChecker(logger=logger, console=console),
        rollback_manager=RollbackManager(
            infrastructure,
            logger=logger,
            console=console,
            targets=settings.destroy_targets,
        ),
        approval_gate=approval_gate,
        validation=ValidationService(),
        report=RunReportService(settings.report_file, logger=logger),
    )


class Orchestrator:
    """Runs one pipeline invocation as a state machine.

    The mode is fixed when the run is created. Deploy walks ``DEPLOY_PATH``,
    destroy walks ``DESTROY_PATH``; any stage error moves the run to
    ``Stage.FAILED``, which is where rollback is decided. ``DONE`` and
    ``FAILED`` are terminal.
    """

    DEPLOY_PATH: Tuple[Stage, ...] = (
        Stage.VALIDATE_PARAMS,
        Stage.RESOLVE_CONFIG,
        Stage.ENSURE_REPOSITORY,
        Stage.BUILD,
        Stage.SMOKE_TEST,
        Stage.AUTHENTICATE,
        Stage.PUSH,
        Stage.UPDATE_INFRA_CONFIG,
        Stage.PLAN,
        Stage.APPROVE,
        Stage.APPLY,
        Stage.VERIFY_HEALTH,
    )
    DESTROY_PATH: Tuple[Stage, ...] = (
        Stage.VALIDATE_PARAMS,
        Stage.RESOLVE_CONFIG,
        Stage.STAGED_DESTROY,
        Stage.FULL_DESTROY,
    )

    def __init__(
        self,
        parameters: RunParameters,
        settings: Optional[PipelineSettings] = None,
        services: Optional[PipelineServices] = None,
        run_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or PipelineSettings()
        self.services = services or build_services(parameters, self.settings)
        self.sleep = sleep
        self.image_tag: Optional[str] = None

        mode = RunMode.DESTROY if parameters.destroy else RunMode.DEPLOY
        self.run_state = PipelineRun(
            run_id=run_id or uuid.uuid4().hex[:10],
            parameters=parameters,
            mode=mode,
        )

        self._handlers: Dict[Stage, Callable[[], Optional[Dict[str, Any]]]] = {
            Stage.VALIDATE_PARAMS: self.validate_params,
            Stage.RESOLVE_CONFIG: self.resolve_config,
            Stage.ENSURE_REPOSITORY: self.ensure_repository,
            Stage.BUILD: self.build,
            Stage.SMOKE_TEST: self.smoke_test,
            Stage.AUTHENTICATE: self.authenticate,
            Stage.PUSH: self.push,
            Stage.UPDATE_INFRA_CONFIG: self.update_infra_config,
            Stage.PLAN: self.plan,
            Stage.APPROVE: self.approve,
            Stage.APPLY: self.apply,
            Stage.VERIFY_HEALTH: self.verify_health,
            Stage.STAGED_DESTROY: self.staged_destroy,
            Stage.FULL_DESTROY: self.full_destroy,
        }

    @property
    def parameters(self) -> RunParameters:
        return self.run_state.parameters

    @property
    def path(self) -> Tuple[Stage, ...]:
        if self.run_state.mode == RunMode.DESTROY:
            return self.DESTROY_PATH
        return self.DEPLOY_PATH

    def _transition(self, stage: Stage):
        current = self.run_state.state
        if current.is_terminal:
            raise RuntimeError(f"Run {self.run_state.run_id} is already {current.value}; cannot enter {stage.value}.")
        logger.debug("Transition %s -> %s", current.value, stage.value)
        self.run_state.state = stage

    def _record(self, stage: Stage, status: StageStatus, error: Optional[str] = None, duration: float = 0.0):
        self.run_state.outcomes.append(
            StageOutcome(stage=stage, status=status, error=error, duration_seconds=duration)
        )

    def _skip(self, stage: Stage, reason: str):
        self._transition(stage)
        logger.info("Skipping %s: %s", stage.value, reason)
        self._record(stage, StageStatus.SKIPPED)
        self.services.report.stage_finished(stage.value, "skipped", details={"reason": reason})

    def _run_stage(self, stage: Stage):
        if stage == Stage.VALIDATE_PARAMS and self.run_state.mode == RunMode.DESTROY:
            self._skip(stage, "parameters are not validated in destroy mode")
            return

        self._transition(stage)
        report = self.services.report
        report.stage_started(stage.value)
        started = time.monotonic()

        try:
            details = self._handlers[stage]()
        except BaseException as exc:
            error = str(exc) or exc.__class__.__name__
            self._record(stage, StageStatus.FAILED, error=error, duration=time.monotonic() - started)
            report.stage_finished(stage.value, "failed", error=error)
            raise

        self._record(stage, StageStatus.SUCCEEDED, duration=time.monotonic() - started)
        report.stage_finished(stage.value, "succeeded", details=details)

    # Stage bodies

    def validate_params(self):
        self.image_tag = self.services.validation.validate_run_parameters(self.parameters)
        logger.info("Image tag for this run: %s", self.image_tag)
        return {"image_tag": self.image_tag}

    def resolve_config(self):
        explicit_account = (self.parameters.account_id or "").strip()
        if explicit_account:
            self.services.validation.validate_account_id(explicit_account)

        config = self.services.resolver.resolve_all(self.parameters)
        self.run_state.config = config
        for item in config:
            logger.info("Resolved %s from %s.", item.key, item.source.value)

        self.services.validation.validate_account_id(config.value("account_id"))
        self.services.report.set_value("config", config.as_dict())
        return {key: data["source"] for key, data in config.as_dict().items()}

    def ensure_repository(self):
        self.services.registry.ensure_repository(self.parameters.repository_name)

    def build(self):
        registry_uri = self.services.registry.registry_uri(
            self._config_value("account_id"),
            self.parameters.region,
            self.parameters.repository_name,
        )
        artifact = Artifact(
            repository=self.parameters.repository_name,
            tag=self.image_tag or self.services.validation.resolve_tag(self.parameters),
            registry_uri=registry_uri,
        )
        self.run_state.artifact = self.services.builder.build(self.parameters.source_path, artifact)
        self.services.report.set_value("artifact", asdict(self.run_state.artifact))
        return {"image": self.run_state.artifact.image_ref}

    def smoke_test(self):
        self.services.builder.smoke_test(
            self.run_state.artifact,
            self.parameters.test_port,
            container_name=f"shipwright_{self.run_state.run_id}_smoke",
        )

    def authenticate(self):
        self.services.registry.authenticate(self.run_state.artifact.registry_host)

    def push(self):
        self.services.registry.push(self.run_state.artifact)

    def update_infra_config(self):
        var_file = self.services.infrastructure.write_variables(self.infra_parameters())
        return {"var_file": var_file}

    def plan(self):
        self.run_state.plan = self.services.infrastructure.plan(self.infra_parameters())
        return {"has_changes": self.run_state.plan.has_changes}

    def approve(self):
        plan = self.run_state.plan
        changes = "with changes" if plan.has_changes else "with no changes"
        summary = (
            f"Deploy {self.run_state.artifact.image_ref} to cluster "
            f"{self._config_value('cluster_name')} ({self.parameters.region}), plan {changes}."
        )
        timeout = self.settings.approval_timeout
        decision = self.services.approval_gate.request(summary, timeout)

        if decision == ApprovalDecision.TIMED_OUT:
            raise ApplyError(actionable_error("approval_timed_out", timeout=f"{timeout:.0f}"))
        if decision != ApprovalDecision.APPROVED:
            raise ApplyError(actionable_error("approval_rejected"))
        return {"decision": decision.value}

    def apply(self):
        self.run_state.infrastructure_changed = True
        self.services.infrastructure.apply(self.run_state.plan)

    def verify_health(self):
        settings = self.settings
        checker = self.services.health_checker
        # Endpoint reads and probes share one budget of health_attempts.
        remaining = settings.health_attempts
        reads = 0
        waited = 0.0

        while True:
            endpoint = self._health_endpoint()
            reads += 1
            if endpoint:
                result = checker.wait_healthy(endpoint, remaining, settings.health_interval)
                result = replace(result, waited_seconds=result.waited_seconds + waited)
                break

            remaining -= 1
            if remaining <= 0 or reads >= settings.endpoint_attempts:
                result = HealthCheckResult(
                    attempts=0,
                    verdict=HealthVerdict.INCONCLUSIVE,
                    waited_seconds=waited,
                )
                break
            self.sleep(settings.health_interval)
            waited += settings.health_interval

        self.run_state.health = result
        self.services.report.set_value("health", asdict(result))

        if result.verdict == HealthVerdict.INCONCLUSIVE:
            raise HealthCheckExhausted(
                actionable_error("endpoint_unresolved", output=settings.endpoint_output)
            )
        if result.verdict != HealthVerdict.HEALTHY:
            raise HealthCheckExhausted(
                actionable_error(
                    "health_check_exhausted",
                    endpoint=endpoint,
                    attempts=str(result.attempts),
                )
            )
        return {"endpoint": endpoint, "attempts": result.attempts}

    def staged_destroy(self):
        failed = self.services.infrastructure.destroy_targets(
            self.infra_parameters(),
            self.settings.destroy_targets,
        )
        return {"targets": list(self.settings.destroy_targets), "failed_targets": failed}

    def full_destroy(self):
        self.services.infrastructure.destroy_all(self.infra_parameters())

    # Helpers

    def _config_value(self, key: str) -> str:
        if key in self.run_state.config:
            return self.run_state.config.value(key)
        return getattr(self.parameters, key)

    def _health_endpoint(self) -> str:
        endpoint = self.settings.health_url
        if not endpoint:
            endpoint = self.services.infrastructure.output(self.settings.endpoint_output)
        return self.services.health_checker.build_url(endpoint, self.settings.health_path)

    def infra_parameters(self) -> InfraParameters:
        artifact = self.run_state.artifact
        if artifact is not None:
            image_uri = artifact.image_ref
        else:
            image_uri = self.services.registry.registry_uri(
                self._config_value("account_id"),
                self.parameters.region,
                self.parameters.repository_name,
            )
            tag = self.image_tag or (self.parameters.image_tag or "").strip()
            if tag:
                image_uri = f"{image_uri}:{tag}"

        return InfraParameters(
            image_uri=image_uri,
            cluster_name=self._config_value("cluster_name"),
            region=self.parameters.region,
            service_type=self.parameters.service_type,
            account_id=self._config_value("account_id"),
        )

    def _should_rollback(self, failed_stage: Stage, exc: BaseException) -> bool:
        if self.run_state.mode != RunMode.DEPLOY:
            return False
        if failed_stage == Stage.VALIDATE_PARAMS or not getattr(exc, "allows_rollback", True):
            return False
        if isinstance(exc, HealthCheckExhausted):
            return self.settings.health_failure_policy == HealthFailurePolicy.ROLLBACK
        return True

    def _fail(self, exc: BaseException, message: str):
        run = self.run_state
        failed_stage = run.state
        run.error = message
        self.services.report.set_value("error_kind", getattr(exc, "kind", "unexpected"))

        if self._should_rollback(failed_stage, exc) and not run.rollback_attempted:
            run.rollback_attempted = True
            self.services.rollback_manager.rollback(
                self.infra_parameters(),
                infrastructure_changed=run.infrastructure_changed,
            )
        elif isinstance(exc, HealthCheckExhausted) and run.mode == RunMode.DEPLOY:
            console.print(
                "[bold yellow]Warning:[/bold yellow] infrastructure was left in place. "
                "Verify the deployment manually."
            )
            logger.warning("Health check failed; rollback skipped by policy. Manual verification required.")

        self._transition(Stage.FAILED)
        run.status = RunStatus.FAILED
        self.services.report.set_value("rollback_attempted", run.rollback_attempted)

    def dry_run(self) -> int:
        run = self.run_state
        if run.mode == RunMode.DEPLOY:
            self.image_tag = self.services.validation.validate_run_parameters(self.parameters)
            console.print(f"[blue]Image tag:[/blue] {self.image_tag}")
        console.print(f"[blue]Mode:[/blue] {run.mode.value}")
        console.print("[blue]Stages:[/blue] " + " -> ".join(stage.value for stage in self.path))
        if run.mode == RunMode.DESTROY and self.settings.destroy_targets:
            console.print("[blue]Staged destroy targets:[/blue] " + ", ".join(self.settings.destroy_targets))
        console.print("[green]Dry run complete. No changes were made.[/green]")
        return 0

    def run(self) -> int:
        run = self.run_state
        report = self.services.report
        error_message: Optional[str] = None

        if self.settings.dry_run:
            try:
                return self.dry_run()
            except PipelineError as exc:
                console.print(f"[bold red]Error:[/bold red] {exc}")
                logger.error(str(exc))
                return 1

        try:
            logger.info("Starting %s run %s...", run.mode.value, run.run_id)
            report.start_run(run.run_id, run.mode.value, asdict(self.parameters))

            for stage in self.path:
                self._run_stage(stage)

            self._transition(Stage.DONE)
            run.status = RunStatus.DESTROYED if run.mode == RunMode.DESTROY else RunStatus.SUCCESS
            console.print(f"[bold green]Run {run.run_id} finished: {run.status.value}.[/bold green]")
        except KeyboardInterrupt as exc:
            error_message = "Operation cancelled by user."
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            self._fail(exc, error_message)
        except PipelineError as exc:
            error_message = str(exc)
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(error_message)
            self._fail(exc, error_message)
        except Exception as exc:
            error_message = str(exc)
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            self._fail(exc, error_message)
        finally:
            report.finalize(run.status.value, error=error_message)
            self.print_summary()

        return 0 if run.status in (RunStatus.SUCCESS, RunStatus.DESTROYED) else 1

    def print_summary(self):
        table = Table(title=f"Run {self.run_state.run_id} ({self.run_state.mode.value})")
        table.add_column("Stage")
        table.add_column("Status")
        table.add_column("Duration", justify="right")
        table.add_column("Error")

        colors = {
            StageStatus.SUCCEEDED: "green",
            StageStatus.FAILED: "red",
            StageStatus.SKIPPED: "dim",
        }
        for outcome in self.run_state.outcomes:
            color = colors[outcome.status]
            table.add_row(
                outcome.stage.value,
                f"[{color}]{outcome.status.value}[/{color}]",
                f"{outcome.duration_seconds:.1f}s",
                outcome.error or "",
            )
        console.print(table)

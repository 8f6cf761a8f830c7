import json

import pytest
import requests

import shipwright.core as core_module
import shipwright.services.report as report_module
from shipwright.core import Orchestrator, PipelineServices
from shipwright.errors import ApplyError, BuildError, TransientExternalError
from shipwright.models import (
    ApprovalDecision,
    ConfigSource,
    ConfigValue,
    HealthCheckResult,
    HealthFailurePolicy,
    HealthVerdict,
    PipelineSettings,
    PlanHandle,
    RunParameters,
    RunStatus,
    Stage,
    StageStatus,
)
from shipwright.services.config_resolver import ConfigResolver
from shipwright.services.health import HealthChecker
from shipwright.services.registry import ArtifactRegistryClient
from shipwright.services.report import RunReportService
from shipwright.services.rollback import RollbackManager
from shipwright.services.validation import ValidationService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeStore:
    def __init__(self, values=None):
        self.values = values or {}
        self.calls = []

    def get(self, key):
        self.calls.append(key)
        if key not in self.values:
            raise TransientExternalError(f"ParameterNotFound: {key}")
        return self.values[key]


class FakeRegistry:
    registry_uri = staticmethod(ArtifactRegistryClient.registry_uri)

    def __init__(self, events, existing=True):
        self.events = events
        self.existing = existing
        self.created = 0

    def ensure_repository(self, name):
        self.events.append(("ensure_repository", name))
        if not self.existing:
            self.created += 1
            self.existing = True

    def authenticate(self, registry_host):
        self.events.append(("authenticate", registry_host))

    def push(self, artifact):
        self.events.append(("push", artifact.image_ref))


class FakeBuilder:
    def __init__(self, events, build_error=None):
        self.events = events
        self.build_error = build_error

    def build(self, source_path, artifact):
        self.events.append(("build", artifact.image_ref))
        if self.build_error:
            raise self.build_error
        return artifact

    def smoke_test(self, artifact, port, container_name):
        self.events.append(("smoke_test", port))


class FakeInfrastructure:
    def __init__(self, events, apply_error=None, outputs=None, failing_targets=(), interrupt_apply=False):
        self.events = events
        self.apply_error = apply_error
        self.outputs = list(outputs or ["svc.example.com"])
        self.failing_targets = set(failing_targets)
        self.interrupt_apply = interrupt_apply
        self.destroy_calls = 0

    def write_variables(self, parameters):
        self.events.append(("write_variables", parameters.image_uri))
        return "infra/shipwright.auto.tfvars.json"

    def plan(self, parameters):
        self.events.append(("plan", parameters.cluster_name))
        return PlanHandle(plan_file="infra/shipwright.tfplan", var_file="infra/vars.json", has_changes=True)

    def apply(self, plan):
        self.events.append(("apply", plan.plan_file))
        if self.interrupt_apply:
            raise KeyboardInterrupt()
        if self.apply_error:
            raise self.apply_error

    def destroy_targets(self, parameters, targets):
        failed = []
        for target in targets:
            self.events.append(("destroy_target", target))
            if target in self.failing_targets:
                failed.append(target)
        return failed

    def destroy_all(self, parameters):
        self.events.append(("destroy_all", parameters.cluster_name))

    def destroy(self, parameters, targets=()):
        self.destroy_calls += 1
        failed = self.destroy_targets(parameters, targets)
        self.destroy_all(parameters)
        return failed

    def output(self, name):
        self.events.append(("output", name))
        if len(self.outputs) > 1:
            return self.outputs.pop(0)
        return self.outputs[0]


class FakeApproval:
    def __init__(self, events, decision=ApprovalDecision.APPROVED):
        self.events = events
        self.decision = decision

    def request(self, summary, timeout):
        self.events.append(("approve", timeout))
        return self.decision


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code

    def close(self):
        return None


class ScriptedRequests:
    RequestException = requests.RequestException

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        status = self.statuses.pop(0) if self.statuses else 503
        if isinstance(status, Exception):
            raise status
        return FakeResponse(status)


class CountingRollback(RollbackManager):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []

    def rollback(self, parameters, infrastructure_changed=True):
        self.calls.append(infrastructure_changed)
        return super().rollback(parameters, infrastructure_changed=infrastructure_changed)


@pytest.fixture(autouse=True)
def quiet_console(monkeypatch):
    monkeypatch.setattr(core_module, "console", DummyConsole())


def _parameters(**overrides):
    values = {
        "account_id": "205930632952",
        "region": "us-east-1",
        "cluster_name": "demo",
        "build_number": "42",
        "commit": "abcd123",
        "test_port": 0,
    }
    values.update(overrides)
    return RunParameters(**values)


class Harness:
    def __init__(
        self,
        tmp_path,
        parameters=None,
        settings=None,
        store=None,
        registry_existing=True,
        build_error=None,
        apply_error=None,
        approval=ApprovalDecision.APPROVED,
        health_statuses=(200,),
        outputs=None,
        failing_targets=(),
        interrupt_apply=False,
    ):
        self.events = []
        self.sleeps = []
        self.store = store if store is not None else FakeStore()
        self.requests = ScriptedRequests(health_statuses)
        self.report_file = tmp_path / "run-report.json"
        self.registry = FakeRegistry(self.events, existing=registry_existing)
        self.infrastructure = FakeInfrastructure(
            self.events,
            apply_error=apply_error,
            outputs=outputs,
            failing_targets=failing_targets,
            interrupt_apply=interrupt_apply,
        )
        self.settings = settings or PipelineSettings(
            destroy_targets=("kubernetes_deployment.app", "kubernetes_service_account.app"),
            health_attempts=20,
            health_interval=15,
            endpoint_attempts=3,
            approval_timeout=60,
        )
        self.rollback = CountingRollback(
            self.infrastructure,
            DummyLogger(),
            DummyConsole(),
            targets=self.settings.destroy_targets,
        )
        self.services = PipelineServices(
            resolver=ConfigResolver(self.store, logger=DummyLogger()),
            registry=self.registry,
            builder=FakeBuilder(self.events, build_error=build_error),
            infrastructure=self.infrastructure,
            health_checker=HealthChecker(
                logger=DummyLogger(),
                console=DummyConsole(),
                requests_module=self.requests,
                sleep=self.sleeps.append,
            ),
            rollback_manager=self.rollback,
            approval_gate=FakeApproval(self.events, decision=approval),
            validation=ValidationService(),
            report=RunReportService(str(self.report_file), logger=DummyLogger()),
        )
        self.orchestrator = Orchestrator(
            parameters or _parameters(),
            settings=self.settings,
            services=self.services,
            run_id="run42",
            sleep=self.sleeps.append,
        )

    def run(self):
        return self.orchestrator.run()

    def stages(self):
        return [(outcome.stage, outcome.status) for outcome in self.orchestrator.run_state.outcomes]

    def event_names(self):
        return [name for name, _ in self.events]

    def report(self):
        return json.loads(self.report_file.read_text(encoding="utf-8"))


def test_end_to_end_deploy_succeeds(tmp_path):
    harness = Harness(
        tmp_path,
        store=FakeStore({"account_id": "205930632952"}),
        health_statuses=[503, requests.ConnectionError("refused"), 200],
    )

    exit_code = harness.run()

    run = harness.orchestrator.run_state
    assert exit_code == 0
    assert run.status == RunStatus.SUCCESS
    assert run.state == Stage.DONE
    assert run.artifact.tag == "v42-abcd123"
    assert run.artifact.image_ref == "205930632952.dkr.ecr.us-east-1.amazonaws.com/app:v42-abcd123"
    assert harness.registry.created == 0
    assert run.health.attempts == 3
    assert harness.sleeps == [15, 15]
    assert sum(harness.sleeps) == 30
    assert [stage for stage, _ in harness.stages()] == list(Orchestrator.DEPLOY_PATH)
    assert all(status == StageStatus.SUCCEEDED for _, status in harness.stages())
    assert harness.event_names() == [
        "ensure_repository",
        "build",
        "smoke_test",
        "authenticate",
        "push",
        "write_variables",
        "plan",
        "approve",
        "apply",
        "output",
    ]
    assert harness.rollback.calls == []


def test_end_to_end_report_contents(tmp_path):
    harness = Harness(tmp_path, store=FakeStore({"cluster_name": "remote-cluster"}))

    harness.run()

    report = harness.report()
    assert report["status"] == "success"
    assert report["mode"] == "deploy"
    assert report["config"]["cluster_name"] == {"value": "remote-cluster", "source": "remote", "error": None}
    assert report["config"]["account_id"]["source"] == "parameter"
    assert report["artifact"]["tag"] == "v42-abcd123"
    assert report["health"]["verdict"] == "healthy"
    assert report["stages"][0]["details"] == {"image_tag": "v42-abcd123"}


@pytest.mark.parametrize("account_id", ["12345", "2059306329520", "20593063295a", ""])
def test_invalid_account_fails_before_any_external_call(tmp_path, account_id):
    harness = Harness(tmp_path, parameters=_parameters(account_id=account_id))

    exit_code = harness.run()

    run = harness.orchestrator.run_state
    assert exit_code == 1
    assert run.status == RunStatus.FAILED
    assert run.state == Stage.FAILED
    assert harness.events == []
    assert harness.store.calls == []
    assert harness.rollback.calls == []
    assert harness.stages() == [(Stage.VALIDATE_PARAMS, StageStatus.FAILED)]
    assert "12 digits" in run.error


def test_apply_error_rolls_back_exactly_once(tmp_path):
    harness = Harness(tmp_path, apply_error=ApplyError("terraform apply failed: quota exceeded"))

    exit_code = harness.run()

    run = harness.orchestrator.run_state
    assert exit_code == 1
    assert run.status == RunStatus.FAILED
    assert run.rollback_attempted is True
    assert harness.rollback.calls == [True]
    assert harness.infrastructure.destroy_calls == 1
    assert harness.event_names()[-3:] == ["destroy_target", "destroy_target", "destroy_all"]
    assert harness.stages()[-1] == (Stage.APPLY, StageStatus.FAILED)
    assert harness.report()["rollback_attempted"] is True


def test_build_error_invokes_rollback_without_destroying(tmp_path):
    harness = Harness(tmp_path, build_error=BuildError("Image build failed"))

    harness.run()

    assert harness.rollback.calls == [False]
    assert harness.infrastructure.destroy_calls == 0
    assert "push" not in harness.event_names()


@pytest.mark.parametrize("decision", [ApprovalDecision.REJECTED, ApprovalDecision.TIMED_OUT])
def test_unapproved_plan_never_applies(tmp_path, decision):
    harness = Harness(tmp_path, approval=decision)

    exit_code = harness.run()

    assert exit_code == 1
    assert "apply" not in harness.event_names()
    assert harness.stages()[-1] == (Stage.APPROVE, StageStatus.FAILED)
    assert harness.rollback.calls == [False]
    assert harness.infrastructure.destroy_calls == 0


def test_approval_gate_receives_configured_timeout(tmp_path):
    harness = Harness(tmp_path)

    harness.run()

    assert ("approve", 60) in harness.events


def test_unhealthy_deploy_warns_without_rollback_by_default(tmp_path):
    harness = Harness(tmp_path, health_statuses=[500] * 20)

    exit_code = harness.run()

    run = harness.orchestrator.run_state
    assert exit_code == 1
    assert run.status == RunStatus.FAILED
    assert run.health.verdict == HealthVerdict.UNHEALTHY
    assert run.health.attempts == 20
    assert len(harness.requests.urls) == 20
    assert sum(harness.sleeps) == 19 * 15
    assert harness.rollback.calls == []
    assert harness.infrastructure.destroy_calls == 0


def test_unhealthy_deploy_rolls_back_when_policy_says_so(tmp_path):
    settings = PipelineSettings(
        health_attempts=2,
        health_interval=1,
        health_failure_policy=HealthFailurePolicy.ROLLBACK,
    )
    harness = Harness(tmp_path, settings=settings, health_statuses=[500, 500])

    harness.run()

    assert harness.rollback.calls == [True]
    assert harness.infrastructure.destroy_calls == 1


def test_health_waits_for_endpoint_to_resolve(tmp_path):
    harness = Harness(tmp_path, outputs=["", "", "svc.example.com"], health_statuses=[200])

    exit_code = harness.run()

    assert exit_code == 0
    assert harness.event_names().count("output") == 3
    assert harness.sleeps == [15, 15]
    assert harness.requests.urls == ["http://svc.example.com"]


def test_unresolved_endpoint_fails_health_stage(tmp_path):
    harness = Harness(tmp_path, outputs=[""])

    exit_code = harness.run()

    run = harness.orchestrator.run_state
    assert exit_code == 1
    assert run.health.verdict == HealthVerdict.INCONCLUSIVE
    assert harness.requests.urls == []
    assert harness.stages()[-1] == (Stage.VERIFY_HEALTH, StageStatus.FAILED)
    assert harness.rollback.calls == []


def test_explicit_health_url_skips_terraform_output(tmp_path):
    settings = PipelineSettings(health_url="https://app.example.com", health_path="/healthz")
    harness = Harness(tmp_path, settings=settings)

    harness.run()

    assert "output" not in harness.event_names()
    assert harness.requests.urls == ["https://app.example.com/healthz"]


def test_cancellation_routes_through_failed_and_rolls_back(tmp_path):
    harness = Harness(tmp_path, interrupt_apply=True)

    exit_code = harness.run()

    run = harness.orchestrator.run_state
    assert exit_code == 1
    assert run.state == Stage.FAILED
    assert run.error == "Operation cancelled by user."
    assert harness.rollback.calls == [True]
    assert harness.report()["status"] == "failed"


def test_destroy_mode_continues_past_failing_staged_target(tmp_path):
    harness = Harness(
        tmp_path,
        parameters=_parameters(destroy=True),
        failing_targets={"kubernetes_deployment.app"},
    )

    exit_code = harness.run()

    run = harness.orchestrator.run_state
    assert exit_code == 0
    assert run.status == RunStatus.DESTROYED
    assert harness.events == [
        ("destroy_target", "kubernetes_deployment.app"),
        ("destroy_target", "kubernetes_service_account.app"),
        ("destroy_all", "demo"),
    ]
    assert harness.stages() == [
        (Stage.VALIDATE_PARAMS, StageStatus.SKIPPED),
        (Stage.RESOLVE_CONFIG, StageStatus.SUCCEEDED),
        (Stage.STAGED_DESTROY, StageStatus.SUCCEEDED),
        (Stage.FULL_DESTROY, StageStatus.SUCCEEDED),
    ]
    staged = [stage for stage in harness.report()["stages"] if stage["name"] == "staged_destroy"][0]
    assert staged["details"]["failed_targets"] == ["kubernetes_deployment.app"]


def test_destroy_mode_never_rolls_back(tmp_path):
    harness = Harness(tmp_path, parameters=_parameters(destroy=True))

    def failing_destroy_all(parameters):
        raise ApplyError("terraform destroy failed")

    harness.infrastructure.destroy_all = failing_destroy_all

    exit_code = harness.run()

    assert exit_code == 1
    assert harness.orchestrator.run_state.status == RunStatus.FAILED
    assert harness.rollback.calls == []


def test_destroy_mode_skips_parameter_validation(tmp_path):
    harness = Harness(tmp_path, parameters=_parameters(destroy=True, account_id="", build_number=None))

    exit_code = harness.run()

    run = harness.orchestrator.run_state
    assert exit_code == 0
    assert run.config.get("account_id").source == ConfigSource.DEFAULT


def test_resolved_config_is_write_once(tmp_path):
    harness = Harness(tmp_path)

    harness.run()

    config = harness.orchestrator.run_state.config
    assert config.frozen is True
    with pytest.raises(RuntimeError):
        config.set(ConfigValue(key="region", value="eu-west-1", source=ConfigSource.PARAMETER))


def test_terminal_state_cannot_be_left(tmp_path):
    harness = Harness(tmp_path)
    harness.run()

    with pytest.raises(RuntimeError, match="already done"):
        harness.orchestrator._transition(Stage.VERIFY_HEALTH)


def test_invalid_remote_account_is_validation_error(tmp_path):
    harness = Harness(tmp_path, store=FakeStore({"account_id": "not-an-account"}))

    exit_code = harness.run()

    assert exit_code == 1
    assert harness.stages()[-1] == (Stage.RESOLVE_CONFIG, StageStatus.FAILED)
    assert harness.rollback.calls == []


def test_dry_run_makes_no_external_calls(tmp_path):
    settings = PipelineSettings(dry_run=True)
    harness = Harness(tmp_path, settings=settings)

    exit_code = harness.run()

    assert exit_code == 0
    assert harness.events == []
    assert harness.store.calls == []
    assert harness.orchestrator.image_tag == "v42-abcd123"
    assert not harness.report_file.exists()


def test_dry_run_reports_invalid_parameters(tmp_path):
    harness = Harness(tmp_path, settings=PipelineSettings(dry_run=True), parameters=_parameters(account_id="1"))

    assert harness.run() == 1


def test_health_result_is_recorded_on_run(tmp_path):
    harness = Harness(tmp_path)

    harness.run()

    assert harness.orchestrator.run_state.health == HealthCheckResult(
        attempts=1,
        verdict=HealthVerdict.HEALTHY,
        last_status_code=200,
        waited_seconds=0.0,
    )


class ManualInterventionError(ApplyError):
    kind = "manual_intervention"
    allows_rollback = False


def test_report_write_failure_does_not_fail_run(tmp_path, monkeypatch):
    def failing_mkstemp(*_args, **_kwargs):
        raise FileNotFoundError(2, "No such file or directory")

    monkeypatch.setattr(report_module.tempfile, "mkstemp", failing_mkstemp)
    harness = Harness(tmp_path)

    exit_code = harness.run()

    assert exit_code == 0
    assert harness.orchestrator.run_state.status == RunStatus.SUCCESS
    assert not harness.report_file.exists()


def test_report_write_failure_during_failed_run_still_rolls_back(tmp_path, monkeypatch):
    def failing_mkstemp(*_args, **_kwargs):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(report_module.tempfile, "mkstemp", failing_mkstemp)
    harness = Harness(tmp_path, apply_error=ApplyError("terraform apply failed"))

    exit_code = harness.run()

    assert exit_code == 1
    assert harness.orchestrator.run_state.state == Stage.FAILED
    assert harness.infrastructure.destroy_calls == 1


def test_endpoint_reads_share_the_health_budget(tmp_path):
    settings = PipelineSettings(health_attempts=3, health_interval=1, endpoint_attempts=3)
    harness = Harness(
        tmp_path,
        settings=settings,
        outputs=["", "", "svc.example"],
        health_statuses=[503, 503, 503],
    )

    exit_code = harness.run()

    run = harness.orchestrator.run_state
    assert exit_code == 1
    assert harness.sleeps == [1, 1]
    assert sum(harness.sleeps) <= settings.health_attempts * settings.health_interval
    assert harness.requests.urls == ["http://svc.example"]
    assert run.health.verdict == HealthVerdict.UNHEALTHY
    assert run.health.waited_seconds == 2.0


def test_endpoint_reads_stop_when_health_budget_is_spent(tmp_path):
    settings = PipelineSettings(health_attempts=2, health_interval=1, endpoint_attempts=10)
    harness = Harness(tmp_path, settings=settings, outputs=[""])

    harness.run()

    assert harness.event_names().count("output") == 2
    assert harness.sleeps == [1]
    assert harness.orchestrator.run_state.health.verdict == HealthVerdict.INCONCLUSIVE


def test_errors_that_forbid_rollback_skip_it(tmp_path):
    harness = Harness(tmp_path, apply_error=ManualInterventionError("state lock held by another run"))

    exit_code = harness.run()

    assert exit_code == 1
    assert harness.rollback.calls == []
    assert harness.infrastructure.destroy_calls == 0
    assert harness.report()["error_kind"] == "manual_intervention"


def test_failure_kind_is_reported(tmp_path):
    harness = Harness(tmp_path, build_error=BuildError("Image build failed"))

    harness.run()

    assert harness.report()["error_kind"] == "build"


def test_destroy_mode_rejects_malformed_account_before_remote_lookup(tmp_path):
    harness = Harness(tmp_path, parameters=_parameters(destroy=True, account_id="12ab"))

    exit_code = harness.run()

    assert exit_code == 1
    assert harness.store.calls == []
    assert harness.events == []
    assert harness.stages() == [
        (Stage.VALIDATE_PARAMS, StageStatus.SKIPPED),
        (Stage.RESOLVE_CONFIG, StageStatus.FAILED),
    ]
    assert harness.rollback.calls == []

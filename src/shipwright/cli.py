import logging
import os

import click
from rich.logging import RichHandler

from .constants import (
    DEFAULT_APPROVAL_TIMEOUT_SECONDS,
    DEFAULT_CONFIG_FILE,
    DEFAULT_DESTROY_TARGETS,
    DEFAULT_ENDPOINT_OUTPUT,
    DEFAULT_HEALTH_ATTEMPTS,
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    DEFAULT_PARAMETER_PREFIX,
    DEFAULT_REGION,
    DEFAULT_REPORT_FILE,
    DEFAULT_REPOSITORY,
    DEFAULT_SERVICE_TYPE,
    SMOKE_TEST_CONTAINER_PORT,
)
from .core import Orchestrator
from .errors import PipelineError
from .models import HealthFailurePolicy, PipelineSettings, RunParameters
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.option("--account-id", envvar="AWS_ACCOUNT_ID", help="12-digit AWS account identifier.")
@click.option("--region", envvar="AWS_REGION", help=f"AWS region (default: {DEFAULT_REGION}).")
@click.option("--cluster-name", envvar="CLUSTER_NAME", help="Target cluster name.")
@click.option(
    "--image-tag",
    envvar="IMAGE_TAG",
    help="Image tag to publish. Computed as v<build-number>-<short-commit> when omitted.",
)
@click.option("--build-number", envvar="BUILD_NUMBER", help="CI build number used for the computed tag.")
@click.option("--commit", envvar="GIT_COMMIT", help="Commit hash used for the computed tag.")
@click.option(
    "--test-port",
    type=click.IntRange(min=0, max=65535),
    default=None,
    help="Local port for the smoke test. 0 picks a free port (default).",
)
@click.option(
    "--container-port",
    type=click.IntRange(min=1, max=65535),
    default=None,
    help=f"Port the image listens on inside the smoke-test container (default: {SMOKE_TEST_CONTAINER_PORT}).",
)
@click.option("--destroy", is_flag=True, default=None, help="Tear down the infrastructure instead of deploying.")
@click.option("--repository", default=None, help=f"Registry repository name (default: {DEFAULT_REPOSITORY}).")
@click.option("--source-path", type=click.Path(), default=None, help="Docker build context (default: .).")
@click.option("--infra-dir", type=click.Path(), default=None, help="Terraform root module (default: infra).")
@click.option(
    "--service-type",
    default=None,
    help=f"Service exposure type passed to the infrastructure (default: {DEFAULT_SERVICE_TYPE}).",
)
@click.option(
    "--destroy-target",
    "destroy_targets",
    multiple=True,
    help="Resource selector destroyed before the full teardown. Repeat to keep an order.",
)
@click.option("--health-url", default=None, help="Health endpoint. Read from Terraform output when omitted.")
@click.option("--health-path", default=None, help="Path appended to the health endpoint.")
@click.option(
    "--endpoint-output",
    default=None,
    help=f"Terraform output holding the service endpoint (default: {DEFAULT_ENDPOINT_OUTPUT}).",
)
@click.option("--health-attempts", type=click.IntRange(min=1), default=None, help="Maximum health probes.")
@click.option("--health-interval", type=click.FloatRange(min=0), default=None, help="Seconds between probes.")
@click.option(
    "--approval-timeout",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds to wait for apply approval (default: 3600).",
)
@click.option("--auto-approve", is_flag=True, default=None, help="Skip the interactive approval gate.")
@click.option(
    "--rollback-on-unhealthy",
    is_flag=True,
    default=None,
    help="Destroy freshly applied infrastructure when the health check fails.",
)
@click.option(
    "--remote-config/--no-remote-config",
    default=None,
    help="Read account and cluster values from the parameter store first (default: on).",
)
@click.option(
    "--parameter-prefix",
    default=None,
    help=f"Parameter store prefix for remote values (default: {DEFAULT_PARAMETER_PREFIX}).",
)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--report-file", type=click.Path(), default=None, help="Path of the JSON run report.")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option("--retry-count", type=int, default=None, help="Retries for transient registry failures.")
@click.option("--retry-backoff-seconds", type=float, default=None, help="Backoff between retries.")
@click.option("--command-timeout", type=float, default=None, help="Timeout in seconds for external commands.")
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Validate inputs and print the stage plan without touching any external system.",
)
def main(
    account_id,
    region,
    cluster_name,
    image_tag,
    build_number,
    commit,
    test_port,
    container_port,
    destroy,
    repository,
    source_path,
    infra_dir,
    service_type,
    destroy_targets,
    health_url,
    health_path,
    endpoint_output,
    health_attempts,
    health_interval,
    approval_timeout,
    auto_approve,
    rollback_on_unhealthy,
    remote_config,
    parameter_prefix,
    config,
    report_file,
    verbose,
    log_file,
    retry_count,
    retry_backoff_seconds,
    command_timeout,
    dry_run,
):
    """Build, publish and deploy a container image, or tear the deployment down."""
    logger = logging.getLogger("shipwright")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    build_number = _resolve_option(build_number, config_values, "build_number")
    commit = _resolve_option(commit, config_values, "commit")
    parameters = RunParameters(
        account_id=str(_resolve_option(account_id, config_values, "account_id", default="")),
        region=str(_resolve_option(region, config_values, "region", default=DEFAULT_REGION)),
        cluster_name=str(_resolve_option(cluster_name, config_values, "cluster_name", default="")),
        image_tag=_resolve_option(image_tag, config_values, "image_tag"),
        test_port=int(_resolve_option(test_port, config_values, "test_port", default=0)),
        destroy=bool(destroy),
        build_number=str(build_number) if build_number is not None else None,
        commit=str(commit) if commit is not None else None,
        source_path=str(_resolve_option(source_path, config_values, "source_path", default=".")),
        repository_name=str(_resolve_option(repository, config_values, "repository", default=DEFAULT_REPOSITORY)),
        service_type=str(
            _resolve_option(service_type, config_values, "service_type", default=DEFAULT_SERVICE_TYPE)
        ),
    )

    rollback_on_unhealthy = bool(
        _resolve_option(rollback_on_unhealthy, config_values, "rollback_on_unhealthy", default=False)
    )
    settings = PipelineSettings(
        infra_dir=str(_resolve_option(infra_dir, config_values, "infra_dir", default="infra")),
        destroy_targets=tuple(
            _resolve_option(
                destroy_targets or None,
                config_values,
                "destroy_targets",
                default=DEFAULT_DESTROY_TARGETS,
            )
        ),
        health_url=_resolve_option(health_url, config_values, "health_url"),
        health_path=_resolve_option(health_path, config_values, "health_path"),
        endpoint_output=str(
            _resolve_option(endpoint_output, config_values, "endpoint_output", default=DEFAULT_ENDPOINT_OUTPUT)
        ),
        health_attempts=int(
            _resolve_option(health_attempts, config_values, "health_attempts", default=DEFAULT_HEALTH_ATTEMPTS)
        ),
        health_interval=float(
            _resolve_option(
                health_interval,
                config_values,
                "health_interval",
                default=DEFAULT_HEALTH_INTERVAL_SECONDS,
            )
        ),
        container_port=int(
            _resolve_option(container_port, config_values, "container_port", default=SMOKE_TEST_CONTAINER_PORT)
        ),
        approval_timeout=float(
            _resolve_option(
                approval_timeout,
                config_values,
                "approval_timeout",
                default=DEFAULT_APPROVAL_TIMEOUT_SECONDS,
            )
        ),
        auto_approve=bool(_resolve_option(auto_approve, config_values, "auto_approve", default=False)),
        health_failure_policy=(
            HealthFailurePolicy.ROLLBACK if rollback_on_unhealthy else HealthFailurePolicy.WARN
        ),
        remote_config=bool(_resolve_option(remote_config, config_values, "remote_config", default=True)),
        parameter_prefix=str(
            _resolve_option(parameter_prefix, config_values, "parameter_prefix", default=DEFAULT_PARAMETER_PREFIX)
        ),
        report_file=_resolve_option(report_file, config_values, "report_file", default=DEFAULT_REPORT_FILE),
        retry_count=int(_resolve_option(retry_count, config_values, "retry_count", default=1)),
        retry_backoff_seconds=float(
            _resolve_option(retry_backoff_seconds, config_values, "retry_backoff_seconds", default=2.0)
        ),
        command_timeout=_resolve_option(command_timeout, config_values, "command_timeout"),
        dry_run=bool(dry_run),
    )

    try:
        orchestrator = Orchestrator(parameters=parameters, settings=settings)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(orchestrator.run())


if __name__ == "__main__":
    main()

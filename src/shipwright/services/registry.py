"""Artifact registry client backed by Amazon ECR and the docker CLI."""

from typing import Set

from shipwright.errors import CommandError, PublishError
from shipwright.models import Artifact


class ArtifactRegistryClient:
    """Ensures repositories exist, logs docker into the registry and pushes images."""

    ALREADY_EXISTS_MARKER = "RepositoryAlreadyExistsException"

    def __init__(self, run_cmd, logger, console, region: str, retry_count: int = 0, retry_backoff_seconds: float = 0.0):
        self.run_cmd = run_cmd
        self.logger = logger
        self.console = console
        self.region = region
        self.retry_count = retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self._authenticated_hosts: Set[str] = set()

    @staticmethod
    def registry_uri(account_id: str, region: str, repository: str) -> str:
        return f"{account_id}.dkr.ecr.{region}.amazonaws.com/{repository}"

    def repository_exists(self, name: str) -> bool:
        result = self.run_cmd(
            [
                "aws",
                "ecr",
                "describe-repositories",
                "--repository-names",
                name,
                "--region",
                self.region,
            ],
            check=False,
            capture_output=True,
        )
        return result.returncode == 0

    def ensure_repository(self, name: str):
        if self.repository_exists(name):
            self.logger.info("Repository '%s' already exists.", name)
            return

        self.console.print(f"[blue]Creating repository {name}...[/blue]")
        result = self.run_cmd(
            [
                "aws",
                "ecr",
                "create-repository",
                "--repository-name",
                name,
                "--region",
                self.region,
                "--image-scanning-configuration",
                "scanOnPush=true",
            ],
            check=False,
            capture_output=True,
        )
        if result.returncode == 0:
            self.console.print(f"[green]Repository {name} created.[/green]")
            return

        stderr = (result.stderr or "").strip()
        if self.ALREADY_EXISTS_MARKER in stderr:
            self.logger.info("Repository '%s' was created concurrently.", name)
            return

        raise PublishError(f"Could not create repository '{name}': {stderr or result.returncode}")

    def authenticate(self, registry_host: str):
        try:
            password = self.run_cmd(
                ["aws", "ecr", "get-login-password", "--region", self.region],
                check=True,
                capture_output=True,
                redact=True,
            ).stdout
            self.run_cmd(
                ["docker", "login", "--username", "AWS", "--password-stdin", registry_host],
                check=True,
                capture_output=True,
                input_text=password,
            )
        except CommandError as exc:
            raise PublishError(f"Registry authentication failed for {registry_host}: {exc}") from exc

        self._authenticated_hosts.add(registry_host)
        self.console.print(f"[green]Authenticated to {registry_host}.[/green]")

    def is_authenticated(self, registry_host: str) -> bool:
        return registry_host in self._authenticated_hosts

    def push(self, artifact: Artifact):
        if not self.is_authenticated(artifact.registry_host):
            raise PublishError(
                f"Cannot push {artifact.image_ref}: not authenticated to {artifact.registry_host}."
            )

        self.console.print(f"[blue]Pushing {artifact.image_ref}...[/blue]")
        try:
            self.run_cmd(
                ["docker", "push", artifact.image_ref],
                check=True,
                capture_output=True,
                retry_count=self.retry_count,
                retry_backoff_seconds=self.retry_backoff_seconds,
            )
        except CommandError as exc:
            raise PublishError(f"Push failed for {artifact.image_ref}: {exc}") from exc

        self.console.print(f"[green]Pushed {artifact.image_ref}.[/green]")

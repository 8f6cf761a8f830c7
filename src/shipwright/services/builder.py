"""Container image build and smoke-test service."""

import os
import time
from typing import Iterable, Optional

import requests

from shipwright.constants import (
    HTTP_PROBE_TIMEOUT_SECONDS,
    SMOKE_TEST_CONTAINER_PORT,
    SMOKE_TEST_PATHS,
    SMOKE_TEST_SETTLE_SECONDS,
)
from shipwright.errors import BuildError, CommandError, SmokeTestError
from shipwright.errors_catalog import actionable_error
from shipwright.models import Artifact


class ArtifactBuilder:
    """Builds tagged images and runs them once locally before they are published."""

    def __init__(
        self,
        run_cmd,
        docker_runtime,
        logger,
        console,
        requests_module=requests,
        sleep=time.sleep,
        settle_seconds: float = SMOKE_TEST_SETTLE_SECONDS,
        probe_paths: Iterable[str] = SMOKE_TEST_PATHS,
        container_port: int = SMOKE_TEST_CONTAINER_PORT,
    ):
        self.run_cmd = run_cmd
        self.docker_runtime = docker_runtime
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.sleep = sleep
        self.settle_seconds = settle_seconds
        self.probe_paths = tuple(probe_paths)
        self.container_port = container_port

    def build(self, source_path: str, artifact: Artifact) -> Artifact:
        if not os.path.isdir(source_path):
            raise BuildError(actionable_error("source_not_found", path=source_path))

        self.console.print(f"[blue]Building {artifact.image_ref}...[/blue]")
        self.logger.info("Building image %s from %s", artifact.image_ref, source_path)
        try:
            self.run_cmd(
                ["docker", "build", "-t", artifact.image_ref, source_path],
                check=True,
                capture_output=True,
            )
        except CommandError as exc:
            raise BuildError(f"Image build failed for {artifact.image_ref}: {exc}") from exc

        self.console.print(f"[green]Built {artifact.image_ref}.[/green]")
        return artifact

    def smoke_test(self, artifact: Artifact, port: int, container_name: str):
        host_port = port or self.docker_runtime.find_free_port()
        self.console.print(
            f"[blue]Smoke testing {artifact.image_ref} on port {host_port}...[/blue]"
        )

        started = False
        try:
            self.docker_runtime.start_container(
                artifact.image_ref,
                container_name,
                host_port=host_port,
                container_port=self.container_port,
            )
            started = True
            self.sleep(self.settle_seconds)

            for path in self.probe_paths:
                self._probe(artifact, f"http://127.0.0.1:{host_port}{path}")
        except SmokeTestError:
            if started:
                logs = self.docker_runtime.container_logs(container_name)
                if logs:
                    self.logger.error("Recent container logs:\n%s", logs)
            raise
        finally:
            self.docker_runtime.remove_container(container_name)

        self.console.print("[green]Smoke test passed.[/green]")

    def _probe(self, artifact: Artifact, url: str):
        status: Optional[int] = None
        try:
            response = self.requests.get(url, timeout=HTTP_PROBE_TIMEOUT_SECONDS)
            status = response.status_code
            response.close()
        except self.requests.RequestException as exc:
            raise SmokeTestError(
                actionable_error("smoke_test_failed", image=artifact.image_ref, detail=f"{url}: {exc}")
            ) from exc

        self.logger.debug("Smoke probe %s -> %s", url, status)
        if status != 200:
            raise SmokeTestError(
                actionable_error(
                    "smoke_test_failed",
                    image=artifact.image_ref,
                    detail=f"{url} returned HTTP {status}",
                )
            )

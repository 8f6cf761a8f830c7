"""Docker runtime services for shipwright."""

import socket
from typing import Callable, Optional

from shipwright.errors import CommandError, SmokeTestError


class DockerRuntimeService:
    """Manages the transient containers used for smoke tests."""

    def __init__(self, logger, console, run_cmd: Callable):
        self.logger = logger
        self.console = console
        self.run_cmd = run_cmd

    @staticmethod
    def find_free_port() -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return sock.getsockname()[1]

    def start_container(self, image_ref: str, name: str, host_port: int, container_port: int) -> str:
        try:
            result = self.run_cmd(
                [
                    "docker",
                    "run",
                    "-d",
                    "--rm",
                    "--name",
                    name,
                    "-p",
                    f"{host_port}:{container_port}",
                    image_ref,
                ],
                check=True,
                capture_output=True,
            )
        except CommandError as exc:
            raise SmokeTestError(f"Could not start container {name} from {image_ref}: {exc}") from exc

        container_id = (result.stdout or "").strip()
        self.logger.debug("Started container %s (%s)", name, container_id or "<unknown id>")
        return container_id

    def container_logs(self, name: str, tail: int = 40) -> Optional[str]:
        result = self.run_cmd(
            ["docker", "logs", "--tail", str(tail), name],
            check=False,
            capture_output=True,
        )
        if result.returncode != 0:
            return None
        return ((result.stdout or "") + (result.stderr or "")).strip() or None

    def remove_container(self, name: str):
        self.run_cmd(
            ["docker", "rm", "-f", name],
            check=False,
            capture_output=True,
        )

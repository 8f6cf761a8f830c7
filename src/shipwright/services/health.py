"""Bounded-retry health verification for deployed endpoints."""

import time
from typing import Optional

import requests

from shipwright.constants import HTTP_PROBE_TIMEOUT_SECONDS
from shipwright.models import HealthCheckResult, HealthVerdict


class HealthChecker:
    """Polls an HTTP endpoint until it answers 200 or the attempt budget runs out."""

    def __init__(
        self,
        logger,
        console,
        requests_module=requests,
        sleep=time.sleep,
        probe_timeout: float = HTTP_PROBE_TIMEOUT_SECONDS,
    ):
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.sleep = sleep
        self.probe_timeout = probe_timeout

    @staticmethod
    def build_url(endpoint: str, path: Optional[str] = None) -> str:
        endpoint = (endpoint or "").strip()
        if not endpoint:
            return ""
        if "://" not in endpoint:
            endpoint = f"http://{endpoint}"
        if path:
            endpoint = f"{endpoint.rstrip('/')}/{path.lstrip('/')}"
        return endpoint

    def wait_healthy(self, endpoint: str, max_attempts: int, interval: float) -> HealthCheckResult:
        if not endpoint:
            self.logger.info("Health endpoint is not resolvable yet.")
            return HealthCheckResult(attempts=0, verdict=HealthVerdict.INCONCLUSIVE)

        last_status: Optional[int] = None
        last_error: Optional[str] = None
        waited = 0.0
        attempts = 0

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                self.sleep(interval)
                waited += interval

            attempts = attempt
            try:
                response = self.requests.get(endpoint, timeout=self.probe_timeout)
                last_status = response.status_code
                last_error = None
                response.close()
            except self.requests.RequestException as exc:
                last_status = None
                last_error = str(exc)
                self.logger.debug("Health probe %s/%s failed: %s", attempt, max_attempts, exc)
                continue

            if last_status == 200:
                self.console.print(
                    f"[green]{endpoint} is healthy (attempt {attempt}/{max_attempts}).[/green]"
                )
                return HealthCheckResult(
                    attempts=attempts,
                    verdict=HealthVerdict.HEALTHY,
                    last_status_code=last_status,
                    waited_seconds=waited,
                )

            self.logger.info(
                "Health probe %s/%s returned HTTP %s.", attempt, max_attempts, last_status
            )

        self.logger.warning("%s did not become healthy after %s attempt(s).", endpoint, attempts)
        return HealthCheckResult(
            attempts=attempts,
            verdict=HealthVerdict.UNHEALTHY,
            last_status_code=last_status,
            last_error=last_error,
            waited_seconds=waited,
        )

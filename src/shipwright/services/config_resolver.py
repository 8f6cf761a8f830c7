"""Configuration resolution with remote store, parameter and default fallback."""

from dataclasses import dataclass
from typing import Dict, Optional

from shipwright.constants import DEFAULT_ACCOUNT_ID, DEFAULT_CLUSTER_NAME, DEFAULT_PARAMETER_PREFIX
from shipwright.errors import CommandError, TransientExternalError
from shipwright.models import ConfigSource, ConfigValue, ResolvedConfig, RunParameters


class ParameterStore:
    """Reads values from AWS SSM Parameter Store through the aws CLI."""

    def __init__(self, run_cmd, region: str, prefix: str = DEFAULT_PARAMETER_PREFIX, timeout: float = 30.0):
        self.run_cmd = run_cmd
        self.region = region
        self.prefix = prefix.rstrip("/")
        self.timeout = timeout

    def parameter_name(self, key: str) -> str:
        return f"{self.prefix}/{key.replace('_', '-')}"

    def get(self, key: str) -> str:
        name = self.parameter_name(key)
        try:
            result = self.run_cmd(
                [
                    "aws",
                    "ssm",
                    "get-parameter",
                    "--name",
                    name,
                    "--region",
                    self.region,
                    "--with-decryption",
                    "--query",
                    "Parameter.Value",
                    "--output",
                    "text",
                ],
                check=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except CommandError as exc:
            raise TransientExternalError(f"Parameter '{name}' could not be read: {exc}") from exc

        value = (result.stdout or "").strip()
        if not value or value == "None":
            raise TransientExternalError(f"Parameter '{name}' is empty.")
        return value


@dataclass(frozen=True)
class ConfigKey:
    """A resolvable key and the run parameter/default it falls back to."""

    name: str
    parameter_field: str
    default: str


class ConfigResolver:
    """Resolves named values: remote store first, then explicit parameter, then default."""

    KEYS = (
        ConfigKey("account_id", "account_id", DEFAULT_ACCOUNT_ID),
        ConfigKey("cluster_name", "cluster_name", DEFAULT_CLUSTER_NAME),
    )

    def __init__(self, store: Optional[ParameterStore], logger):
        self.store = store
        self.logger = logger
        self._cache: Dict[str, ConfigValue] = {}

    def resolve(self, key: str, explicit_param: Optional[str], default_value: str) -> ConfigValue:
        if key in self._cache:
            return self._cache[key]

        remote_error: Optional[str] = None
        if self.store is None:
            remote_error = "remote configuration disabled"
        else:
            try:
                value = self.store.get(key)
            except TransientExternalError as exc:
                remote_error = str(exc)
                self.logger.debug("Remote lookup for '%s' failed: %s", key, exc)
            else:
                resolved = ConfigValue(key=key, value=value, source=ConfigSource.REMOTE)
                self._cache[key] = resolved
                return resolved

        if explicit_param is not None and str(explicit_param).strip():
            resolved = ConfigValue(
                key=key,
                value=str(explicit_param).strip(),
                source=ConfigSource.PARAMETER,
                error=remote_error,
            )
        else:
            self.logger.warning("Using default value for '%s': %s", key, default_value)
            resolved = ConfigValue(
                key=key,
                value=default_value,
                source=ConfigSource.DEFAULT,
                error=remote_error,
            )

        self._cache[key] = resolved
        return resolved

    def resolve_all(self, parameters: RunParameters) -> ResolvedConfig:
        config = ResolvedConfig()
        for config_key in self.KEYS:
            explicit = getattr(parameters, config_key.parameter_field)
            config.set(self.resolve(config_key.name, explicit, config_key.default))
        return config.freeze()

"""Configuration loader for shipwright."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from shipwright.errors import PipelineError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "account_id",
        "region",
        "cluster_name",
        "image_tag",
        "build_number",
        "commit",
        "test_port",
        "container_port",
        "repository",
        "source_path",
        "infra_dir",
        "service_type",
        "destroy_targets",
        "health_url",
        "health_path",
        "endpoint_output",
        "health_attempts",
        "health_interval",
        "approval_timeout",
        "auto_approve",
        "rollback_on_unhealthy",
        "remote_config",
        "parameter_prefix",
        "report_file",
        "verbose",
        "log_file",
        "retry_count",
        "retry_backoff_seconds",
        "command_timeout",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise PipelineError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise PipelineError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise PipelineError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise PipelineError(f"Unknown configuration keys: {unknown_list}")

        targets = parsed.get("destroy_targets")
        if targets is not None and (
            not isinstance(targets, list) or not all(isinstance(item, str) for item in targets)
        ):
            raise PipelineError("`destroy_targets` must be a list of resource selectors.")

        return parsed

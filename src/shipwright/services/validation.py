"""Run parameter validation and image tag computation."""

import re
from typing import Optional

from shipwright.constants import ACCOUNT_ID_PATTERN
from shipwright.errors import ValidationError
from shipwright.errors_catalog import actionable_error
from shipwright.models import RunParameters


class ValidationService:
    """Checks run inputs before anything external is touched."""

    TAG_PATTERN = r"[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}"
    SHORT_COMMIT_LENGTH = 7

    def is_valid_account_id(self, value: Optional[str]) -> bool:
        return value is not None and re.fullmatch(ACCOUNT_ID_PATTERN, value) is not None

    def validate_account_id(self, value: Optional[str]):
        if not self.is_valid_account_id(value):
            raise ValidationError(actionable_error("invalid_account_id", value=str(value)))

    def compute_tag(self, build_number: Optional[str], commit: Optional[str]) -> str:
        build = (build_number or "").strip()
        sha = (commit or "").strip()
        if not build or not sha:
            raise ValidationError(actionable_error("missing_tag_inputs"))
        return f"v{build}-{sha[: self.SHORT_COMMIT_LENGTH]}"

    def resolve_tag(self, parameters: RunParameters) -> str:
        explicit = (parameters.image_tag or "").strip()
        if explicit:
            if not re.fullmatch(self.TAG_PATTERN, explicit):
                raise ValidationError(f"Invalid image tag '{explicit}'.")
            return explicit
        return self.compute_tag(parameters.build_number, parameters.commit)

    def validate_run_parameters(self, parameters: RunParameters) -> str:
        """Validates a deploy run and returns the image tag it will publish."""
        self.validate_account_id(parameters.account_id)

        if not (parameters.region or "").strip():
            raise ValidationError("Region must not be empty.")
        if parameters.test_port < 0 or parameters.test_port > 65535:
            raise ValidationError(
                f"Test port must be between 0 and 65535 (0 picks a free port), got {parameters.test_port}."
            )
        if not (parameters.repository_name or "").strip():
            raise ValidationError("Repository name must not be empty.")

        return self.resolve_tag(parameters)

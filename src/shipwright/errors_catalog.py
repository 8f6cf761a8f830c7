"""Actionable error catalog for shipwright."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "invalid_account_id": {
        "what": "Invalid account identifier '{value}'. It must be exactly 12 digits.",
        "next": "Pass `--account-id` with the 12-digit AWS account number.",
    },
    "missing_tag_inputs": {
        "what": "Cannot compute an image tag without a build number and a commit.",
        "next": "Set `--build-number` and `--commit` (or BUILD_NUMBER/GIT_COMMIT), or pass `--image-tag`.",
    },
    "source_not_found": {
        "what": "Build context not found: {path}",
        "next": "Point `--source-path` at the directory containing the Dockerfile.",
    },
    "infra_dir_not_found": {
        "what": "Infrastructure directory not found: {path}",
        "next": "Point `--infra-dir` at the Terraform root module.",
    },
    "smoke_test_failed": {
        "what": "Smoke test failed for {image}: {detail}",
        "next": "Run the image locally and check the container logs before publishing.",
    },
    "approval_rejected": {
        "what": "Apply was rejected at the approval gate.",
        "next": "Review the plan output and start a new run once the change is approved.",
    },
    "approval_timed_out": {
        "what": "No approval received within {timeout} seconds.",
        "next": "Start a new run and approve within the timeout, or use `--auto-approve` in trusted automation.",
    },
    "health_check_exhausted": {
        "what": "Endpoint {endpoint} was not healthy after {attempts} attempt(s).",
        "next": "Verify the deployment manually; rerun with `--rollback-on-unhealthy` to tear it down automatically.",
    },
    "endpoint_unresolved": {
        "what": "Service endpoint '{output}' was not available after apply.",
        "next": "Check the Terraform output name or pass `--health-url` explicitly.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"

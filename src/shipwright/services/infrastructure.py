"""Terraform-backed infrastructure controller."""

import json
import os
from typing import List, Sequence

from shipwright.constants import PLAN_FILE_NAME, TFVARS_FILE_NAME
from shipwright.errors import ApplyError, CommandError
from shipwright.errors_catalog import actionable_error
from shipwright.models import InfraParameters, PlanHandle


class InfrastructureController:
    """Plans, applies and destroys the Terraform root module in ``infra_dir``.

    The resource graph itself is opaque here: the controller only writes the
    variable file, drives the terraform CLI and reports success or failure.
    """

    def __init__(self, run_cmd, logger, console, infra_dir: str, terraform_bin: str = "terraform"):
        self.run_cmd = run_cmd
        self.logger = logger
        self.console = console
        self.infra_dir = infra_dir
        self.terraform_bin = terraform_bin
        self._initialized = False

    @property
    def var_file(self) -> str:
        return os.path.join(self.infra_dir, TFVARS_FILE_NAME)

    @property
    def plan_file(self) -> str:
        return os.path.join(self.infra_dir, PLAN_FILE_NAME)

    def _terraform(self, *args: str, check: bool = True, capture_output: bool = True):
        return self.run_cmd(
            [self.terraform_bin, *args],
            check=check,
            capture_output=capture_output,
            cwd=self.infra_dir,
        )

    def _ensure_infra_dir(self):
        if not os.path.isdir(self.infra_dir):
            raise ApplyError(actionable_error("infra_dir_not_found", path=self.infra_dir))

    def init(self):
        if self._initialized:
            return
        self._ensure_infra_dir()
        try:
            self._terraform("init", "-input=false", "-no-color")
        except CommandError as exc:
            raise ApplyError(f"terraform init failed: {exc}") from exc
        self._initialized = True

    def write_variables(self, parameters: InfraParameters) -> str:
        self._ensure_infra_dir()
        with open(self.var_file, "w", encoding="utf-8", newline="\n") as file_obj:
            json.dump(parameters.as_variables(), file_obj, indent=2, sort_keys=True)
            file_obj.write("\n")
        self.logger.info("Wrote infrastructure variables to %s", self.var_file)
        return self.var_file

    def plan(self, parameters: InfraParameters) -> PlanHandle:
        if not os.path.exists(self.var_file):
            self.write_variables(parameters)
        self.init()

        self.console.print("[blue]Planning infrastructure changes...[/blue]")
        result = self._terraform(
            "plan",
            "-input=false",
            "-no-color",
            "-detailed-exitcode",
            f"-var-file={TFVARS_FILE_NAME}",
            f"-out={PLAN_FILE_NAME}",
            check=False,
        )
        if result.returncode not in (0, 2):
            stderr = (result.stderr or "").strip()
            raise ApplyError(f"terraform plan failed ({result.returncode}): {stderr}")

        has_changes = result.returncode == 2
        if result.stdout:
            self.logger.debug("Plan output:\n%s", result.stdout.strip())
        self.logger.info("Plan %s changes.", "contains" if has_changes else "contains no")
        return PlanHandle(plan_file=self.plan_file, var_file=self.var_file, has_changes=has_changes)

    def apply(self, plan: PlanHandle):
        self.console.print("[blue]Applying infrastructure plan...[/blue]")
        try:
            self._terraform(
                "apply",
                "-input=false",
                "-no-color",
                os.path.basename(plan.plan_file),
            )
        except CommandError as exc:
            raise ApplyError(f"terraform apply failed: {exc}") from exc
        self.console.print("[green]Infrastructure applied.[/green]")

    def destroy(self, parameters: InfraParameters, targets: Sequence[str] = ()) -> List[str]:
        """Destroy ``targets`` one by one (best-effort), then the whole graph."""
        failed_targets = self.destroy_targets(parameters, targets)
        self.destroy_all(parameters)
        return failed_targets

    def destroy_targets(self, parameters: InfraParameters, targets: Sequence[str]) -> List[str]:
        self.write_variables(parameters)
        self.init()

        failed_targets: List[str] = []
        for target in targets:
            self.console.print(f"[blue]Destroying {target}...[/blue]")
            result = self._terraform(
                "destroy",
                "-auto-approve",
                "-input=false",
                "-no-color",
                f"-var-file={TFVARS_FILE_NAME}",
                f"-target={target}",
                check=False,
            )
            if result.returncode != 0:
                failed_targets.append(target)
                self.logger.warning(
                    "Targeted destroy of %s failed (%s); continuing with full destroy.",
                    target,
                    result.returncode,
                )
        return failed_targets

    def destroy_all(self, parameters: InfraParameters):
        if not os.path.exists(self.var_file):
            self.write_variables(parameters)
        self.init()

        self.console.print("[blue]Destroying remaining infrastructure...[/blue]")
        try:
            self._terraform(
                "destroy",
                "-auto-approve",
                "-input=false",
                "-no-color",
                f"-var-file={TFVARS_FILE_NAME}",
            )
        except CommandError as exc:
            raise ApplyError(f"terraform destroy failed: {exc}") from exc

        self.console.print("[green]Infrastructure destroyed.[/green]")

    def output(self, name: str) -> str:
        result = self._terraform("output", "-raw", "-no-color", name, check=False)
        if result.returncode != 0:
            return ""
        return (result.stdout or "").strip()

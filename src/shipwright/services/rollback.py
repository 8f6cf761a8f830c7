"""Best-effort infrastructure rollback after a failed deploy."""

from typing import Sequence

from shipwright.models import InfraParameters


class RollbackManager:
    """Tears down provisioned infrastructure. Never raises."""

    def __init__(self, infrastructure, logger, console, targets: Sequence[str] = ()):
        self.infrastructure = infrastructure
        self.logger = logger
        self.console = console
        self.targets = tuple(targets)

    def rollback(self, parameters: InfraParameters, infrastructure_changed: bool = True) -> bool:
        if not infrastructure_changed:
            self.logger.info("No infrastructure changes were made; nothing to roll back.")
            return False

        self.console.print("[bold yellow]Rolling back infrastructure...[/bold yellow]")
        self.logger.warning("Rolling back infrastructure for cluster %s", parameters.cluster_name)
        try:
            failed_targets = self.infrastructure.destroy(parameters, self.targets)
        except Exception as exc:
            self.logger.error("Rollback failed: %s", exc)
            self.console.print(f"[bold red]Rollback failed:[/bold red] {exc}")
            return False

        if failed_targets:
            self.logger.warning("Rollback could not destroy targets: %s", ", ".join(failed_targets))
        self.console.print("[yellow]Rollback completed.[/yellow]")
        return True

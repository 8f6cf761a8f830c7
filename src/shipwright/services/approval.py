"""Human approval gates guarding the infrastructure apply."""

import threading
from typing import Callable, Dict, Optional

from rich.prompt import Confirm

from shipwright.models import ApprovalDecision


class AutoApprovalGate:
    """Approves every request without asking. For trusted automation only."""

    def __init__(self, logger):
        self.logger = logger

    def request(self, summary: str, timeout: float) -> ApprovalDecision:
        self.logger.info("Auto-approving: %s", summary)
        return ApprovalDecision.APPROVED


class ConsoleApprovalGate:
    """Asks on the console and gives up after ``timeout`` seconds.

    The prompt runs on a daemon thread so an unanswered prompt cannot keep the
    process alive once the run has moved on to ``failed``.
    """

    def __init__(self, logger, console, ask: Optional[Callable[[str], bool]] = None):
        self.logger = logger
        self.console = console
        self.ask = ask or self._ask

    def _ask(self, question: str) -> bool:
        return Confirm.ask(question, console=self.console, default=False)

    def request(self, summary: str, timeout: float) -> ApprovalDecision:
        self.console.print(f"[bold yellow]Approval required:[/bold yellow] {summary}")
        answer: Dict[str, object] = {}

        def _prompt():
            try:
                answer["approved"] = bool(self.ask(f"Apply this plan? (waiting up to {timeout:.0f}s)"))
            except (EOFError, KeyboardInterrupt) as exc:
                answer["error"] = exc

        worker = threading.Thread(target=_prompt, name="shipwright-approval", daemon=True)
        worker.start()
        worker.join(timeout)

        if worker.is_alive():
            self.logger.error("Approval timed out after %.0f seconds.", timeout)
            return ApprovalDecision.TIMED_OUT

        if "error" in answer:
            self.logger.error("Approval prompt aborted: %r", answer["error"])
            return ApprovalDecision.REJECTED

        if answer.get("approved"):
            self.logger.info("Plan approved.")
            return ApprovalDecision.APPROVED

        self.logger.warning("Plan rejected.")
        return ApprovalDecision.REJECTED

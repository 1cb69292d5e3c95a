"""Two-tier escalation: fatal outcomes abort, recoverable ones ask the operator."""

import logging
from typing import Callable, Optional

from rich.prompt import Confirm

from . import ui
from .models import Decision, Outcome, Status

logger = logging.getLogger(__name__)

ConfirmProvider = Callable[[str], bool]

CONTINUE_QUESTION = "Do you want to continue with the setup?"


def rich_confirm(question: str) -> bool:
    """Blocking yes/no prompt on the shared console."""
    return Confirm.ask(question, console=ui.console, default=False)


class EscalationController:
    """
    Decides whether the run goes on after an outcome.

    The decision is separate from the mechanism of asking: ``confirm`` is any
    callable that takes a question and returns a bool.
    """

    def __init__(
        self, confirm: Optional[ConfirmProvider] = None, assume_yes: bool = False
    ) -> None:
        self.confirm = confirm or rich_confirm
        self.assume_yes = assume_yes

    def resolve(self, outcome: Outcome, question: str = CONTINUE_QUESTION) -> Decision:
        if outcome.status is Status.OK:
            logger.debug(f"ok: {outcome.message}" if outcome.message else "ok")
            return Decision.CONTINUE

        if outcome.status is Status.FATAL:
            logger.error(f"Fatal: {outcome.message}")
            ui.print_error(outcome.message)
            if outcome.remediation_hint:
                ui.print_message(outcome.remediation_hint)
            ui.print_error("Fatal error. Exiting.")
            return Decision.ABORT

        logger.warning(f"Recoverable: {outcome.message}")
        ui.print_error(outcome.message)
        if outcome.remediation_hint:
            logger.warning(f"Hint: {outcome.remediation_hint}")
            ui.print_message(outcome.remediation_hint)

        if self.assume_yes:
            accepted = True
            logger.info("Continuing without prompt (--yes)")
        else:
            accepted = self.confirm(question)

        if accepted:
            logger.info("Operator chose to continue")
            ui.print_warning("Continuing...")
            return Decision.CONTINUE

        logger.warning("Operator chose to stop")
        ui.print_warning("Execution stopped by user")
        return Decision.ABORT

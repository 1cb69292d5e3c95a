"""UFW firewall primitives and rule-set application."""

import logging
import shutil
from typing import Callable, List, Sequence

from .models import FirewallRule, Outcome
from .system import CommandError, attempt, run_command

logger = logging.getLogger(__name__)


class UfwFirewall:
    """The ``ufw`` command line, one primitive per method."""

    def __init__(self, binary: str = "ufw") -> None:
        self.binary = binary

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def reset(self) -> Outcome:
        return attempt(
            [self.binary, "--force", "reset"],
            "Failed to reset UFW",
            "Firewall configuration error",
        )

    def set_default_policy(self, direction: str, action: str) -> Outcome:
        return attempt(
            [self.binary, "default", action, direction],
            f"Failed to set default {direction} policy to {action}",
            "Firewall configuration error",
        )

    def allow(self, port: int, protocol: str = "tcp", comment: str = "") -> Outcome:
        cmd = [self.binary, "allow", f"{port}/{protocol}"]
        if comment:
            cmd += ["comment", comment]
        return attempt(cmd, f"Failed to add {comment or port} rule", "Firewall rule error")

    def enable(self) -> Outcome:
        return attempt(
            [self.binary, "--force", "enable"],
            "Failed to enable UFW",
            "Firewall not enabled",
        )

    def status(self, verbose: bool = False) -> str:
        cmd = [self.binary, "status"] + (["verbose"] if verbose else [])
        try:
            return run_command(cmd).stdout
        except CommandError as e:
            logger.warning(f"Could not read firewall status: {e}")
            return ""


DEFAULT_POLICIES = [("incoming", "deny"), ("outgoing", "allow")]


def apply_rule_set(
    firewall: UfwFirewall,
    rules: Sequence[FirewallRule],
    escalate: Callable[[Outcome], None],
    reset: bool = True,
) -> Outcome:
    """
    Apply ``rules`` in the fixed order reset, defaults, allow rules, enable.

    The first rule is the SSH access rule. If it did not apply, the firewall
    is left disabled so the host stays reachable. ``escalate`` is called for
    each failed allow rule and may raise to stop the pass.
    """
    if reset:
        outcome = firewall.reset()
        if not outcome.is_ok:
            return outcome
        logger.info("Firewall reset to defaults")
    else:
        logger.info("Keeping existing firewall rules")

    for direction, action in DEFAULT_POLICIES:
        outcome = firewall.set_default_policy(direction, action)
        if not outcome.is_ok:
            return outcome

    applied: List[FirewallRule] = []
    for rule in rules:
        outcome = firewall.allow(rule.port, rule.protocol, rule.comment)
        if outcome.is_ok:
            logger.info(f"Added rule for {rule.comment or 'port'} on {rule.spec}")
            applied.append(rule)
        else:
            escalate(outcome)

    if not rules or rules[0] not in applied:
        return Outcome.recoverable(
            "SSH rule is missing; firewall left disabled to avoid lockout",
            f"Allow the SSH port manually, then run '{firewall.binary} --force enable'",
            data=applied,
        )

    outcome = firewall.enable()
    if not outcome.is_ok:
        return outcome
    return Outcome.ok("Firewall enabled", data=applied)

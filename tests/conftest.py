"""
Shared fixtures: sample config files and recording fakes for the external
tools (apt, systemctl, ufw, xray), so passes run without touching the host.
"""

from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from vps_harden.escalation import EscalationController
from vps_harden.models import Outcome

SSHD_SAMPLE = (
    "# This is the sshd server system-wide configuration file.\n"
    "Include /etc/ssh/sshd_config.d/*.conf\n"
    "\n"
    "#AddressFamily any\n"
    "#ListenAddress 0.0.0.0\n"
    "\n"
    "KbdInteractiveAuthentication no\n"
    "UsePAM yes\n"
    "X11Forwarding yes\n"
    "Subsystem\tsftp\t/usr/lib/openssh/sftp-server\n"
)


@pytest.fixture
def sshd_config(tmp_path: Path) -> Path:
    path = tmp_path / "sshd_config"
    path.write_text(SSHD_SAMPLE)
    return path


class FakeFirewall:
    binary = "ufw"

    def __init__(self, failing_ports: Optional[List[int]] = None) -> None:
        self.calls: List[tuple] = []
        self.failing_ports = failing_ports or []

    def available(self) -> bool:
        return True

    def reset(self) -> Outcome:
        self.calls.append(("reset",))
        return Outcome.ok()

    def set_default_policy(self, direction: str, action: str) -> Outcome:
        self.calls.append(("default", direction, action))
        return Outcome.ok()

    def allow(self, port: int, protocol: str = "tcp", comment: str = "") -> Outcome:
        self.calls.append(("allow", port, protocol, comment))
        if port in self.failing_ports:
            return Outcome.recoverable(f"Failed to add {comment} rule", "Firewall rule error")
        return Outcome.ok()

    def enable(self) -> Outcome:
        self.calls.append(("enable",))
        return Outcome.ok()

    def status(self, verbose: bool = False) -> str:
        return "Status: active\n"


class FakeServices:
    def __init__(self, active: Optional[Dict[str, bool]] = None, restart_results=None) -> None:
        self.active = active or {"ssh": True}
        self.restart_results = list(restart_results or [])
        self.restarted: List[str] = []

    def is_active(self, name: str) -> bool:
        return self.active.get(name, False)

    def restart(self, name: str) -> Outcome:
        self.restarted.append(name)
        if self.restart_results:
            return self.restart_results.pop(0)
        return Outcome.ok()


class FakePackages:
    def __init__(self) -> None:
        self.installed: List[List[str]] = []

    def install(self, names) -> Outcome:
        self.installed.append(list(names))
        return Outcome.ok()

    def update(self) -> Outcome:
        return Outcome.ok()

    def fix_broken(self) -> Outcome:
        return Outcome.ok()

    def configure_pending(self) -> Outcome:
        return Outcome.ok()

    def is_installed(self, name: str) -> bool:
        return False

    def reinstall(self, name: str) -> Outcome:
        return Outcome.ok()

    def upgrade(self) -> Outcome:
        return Outcome.ok()

    def held_back_count(self) -> int:
        return 0

    def dist_upgrade(self) -> Outcome:
        return Outcome.ok()

    def autoremove(self) -> Outcome:
        return Outcome.ok()


@pytest.fixture
def fake_firewall() -> FakeFirewall:
    return FakeFirewall()


@pytest.fixture
def firewall_factory():
    return FakeFirewall


@pytest.fixture
def fake_services() -> FakeServices:
    return FakeServices()


@pytest.fixture
def fake_packages() -> FakePackages:
    return FakePackages()


def answering(answer: bool) -> Callable[[str], bool]:
    def confirm(question: str) -> bool:
        return answer

    return confirm


@pytest.fixture
def accepting_controller() -> EscalationController:
    return EscalationController(confirm=answering(True))


@pytest.fixture
def declining_controller() -> EscalationController:
    return EscalationController(confirm=answering(False))

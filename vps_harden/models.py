"""Value types shared by every provisioning pass."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class Status(str, Enum):
    """Severity of an operation result."""

    OK = "ok"
    RECOVERABLE = "recoverable_error"
    FATAL = "fatal_error"


class Decision(str, Enum):
    """What the run does after an outcome has been escalated."""

    CONTINUE = "continue"
    ABORT = "abort"


class Action(str, Enum):
    """How a directive was reconciled against a config file."""

    UNCHANGED = "unchanged"
    REWRITTEN = "rewritten"
    UNCOMMENTED = "uncommented"
    APPENDED = "appended"


@dataclass(frozen=True)
class Outcome:
    """Result of a mutating or validating step."""

    status: Status
    message: str = ""
    remediation_hint: str = ""
    data: Any = None

    @classmethod
    def ok(cls, message: str = "", data: Any = None) -> "Outcome":
        return cls(Status.OK, message, "", data)

    @classmethod
    def recoverable(cls, message: str, hint: str = "", data: Any = None) -> "Outcome":
        return cls(Status.RECOVERABLE, message, hint, data)

    @classmethod
    def fatal(cls, message: str, hint: str = "", data: Any = None) -> "Outcome":
        return cls(Status.FATAL, message, hint, data)

    @property
    def is_ok(self) -> bool:
        return self.status is Status.OK


@dataclass(frozen=True)
class Directive:
    """One key/value line of a line-oriented config file."""

    key: str
    value: str
    commented: bool = False


@dataclass(frozen=True)
class BackupRecord:
    """Snapshot of a config file taken before a mutation pass."""

    original_path: Path
    backup_path: Path
    timestamp: str


@dataclass(frozen=True)
class FirewallRule:
    port: int
    protocol: str = "tcp"
    comment: str = ""

    @property
    def spec(self) -> str:
        return f"{self.port}/{self.protocol}"


@dataclass(frozen=True)
class SecretMaterial:
    """Identity and key pair for the proxy inbound."""

    uuid: str
    private_key: str
    public_key: str


class SetupAborted(Exception):
    """Raised when an escalated outcome resolves to abort."""

    def __init__(self, outcome: Optional[Outcome] = None, exit_code: int = 1):
        self.outcome = outcome
        self.exit_code = exit_code
        super().__init__(outcome.message if outcome else "Setup aborted")


class SetupInterrupted(SetupAborted):
    """The run was stopped by SIGINT or SIGTERM."""

    def __init__(self, signal_name: str, exit_code: int) -> None:
        self.signal_name = signal_name
        super().__init__(Outcome.fatal(f"Interrupted by {signal_name}"), exit_code)

"""
Thin wrappers over the host's tools: command execution, apt, systemctl,
``sshd -t``, account management and preflight checks.

Every wrapper that changes the system returns an Outcome; command failures are
caught here and never leak into the passes as exceptions.
"""

import contextlib
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

from .config import BTRFS_HOOK, MIN_FREE_DISK_GB, OPERATION_TIMEOUT, OS_RELEASE, REBOOT_REQUIRED
from .models import Outcome

logger = logging.getLogger(__name__)

CommandError = (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError)


# ----------------------------------------------------------------
# Command Execution Utilities
# ----------------------------------------------------------------
def run_command(
    cmd: Sequence[str],
    check: bool = True,
    capture_output: bool = True,
    timeout: Optional[int] = OPERATION_TIMEOUT,
    input: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    """Run a system command, logging it and its output to the run log."""
    logger.debug(f"Running command: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            list(cmd),
            check=check,
            text=True,
            capture_output=capture_output,
            timeout=timeout,
            input=input,
            env=env,
        )
    except subprocess.CalledProcessError as e:
        logger.debug(f"Command failed ({e.returncode}): {' '.join(cmd)}")
        if e.stdout:
            logger.debug(f"Stdout: {e.stdout.strip()}")
        if e.stderr:
            logger.debug(f"Stderr: {e.stderr.strip()}")
        raise
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout} seconds: {' '.join(cmd)}")
        raise

    if capture_output and result.stdout:
        logger.debug(result.stdout.rstrip())
    if capture_output and result.stderr:
        logger.debug(result.stderr.rstrip())
    return result


def command_exists(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def _describe(error: Exception) -> str:
    if isinstance(error, subprocess.CalledProcessError) and error.stderr:
        lines = error.stderr.strip().splitlines()
        if lines:
            return lines[-1]
    return str(error)


def attempt(
    cmd: Sequence[str],
    failure: str,
    hint: str = "",
    fatal: bool = False,
    **kwargs,
) -> Outcome:
    """Run ``cmd`` and fold its success or failure into an Outcome."""
    try:
        run_command(cmd, **kwargs)
    except CommandError as e:
        make = Outcome.fatal if fatal else Outcome.recoverable
        return make(f"{failure}: {_describe(e)}", hint)
    return Outcome.ok()


# ----------------------------------------------------------------
# Package Manager
# ----------------------------------------------------------------
class AptPackageManager:
    """apt-get/dpkg with interactive prompts disabled."""

    def __init__(self) -> None:
        self.env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")

    def _run(self, cmd: List[str], failure: str, hint: str = "") -> Outcome:
        return attempt(cmd, failure, hint, env=self.env, timeout=None)

    def is_installed(self, name: str) -> bool:
        try:
            result = run_command(["dpkg", "-s", name], check=False)
        except OSError:
            return False
        return result.returncode == 0

    def update(self) -> Outcome:
        return self._run(
            ["apt-get", "update", "-y"],
            "Failed to update package lists",
            "Check your internet connection and sources.list",
        )

    def install(self, names: Sequence[str]) -> Outcome:
        return self._run(
            ["apt-get", "install", "-y", *names],
            f"Failed to install {' '.join(names)}",
            "Check the package names and your network connection",
        )

    def reinstall(self, name: str) -> Outcome:
        return self._run(
            ["apt-get", "install", "--reinstall", "-y", name],
            f"Failed to reinstall {name}",
        )

    def fix_broken(self) -> Outcome:
        return self._run(
            ["apt-get", "--fix-broken", "install", "-y"],
            "Failed to fix broken packages",
            "This might affect system updates",
        )

    def configure_pending(self) -> Outcome:
        return self._run(
            ["dpkg", "--configure", "-a"],
            "Some issues occurred while configuring packages",
        )

    def upgrade(self) -> Outcome:
        return self._run(["apt-get", "upgrade", "-y"], "Some package upgrades failed")

    def held_back_count(self) -> int:
        try:
            result = run_command(["apt-get", "upgrade", "-s"], check=False, env=self.env)
        except CommandError:
            return 0
        return sum(1 for line in result.stdout.splitlines() if "kept back" in line)

    def dist_upgrade(self) -> Outcome:
        return self._run(
            ["apt-get", "dist-upgrade", "-y"],
            "Some held back packages could not be installed",
        )

    def autoremove(self) -> Outcome:
        return self._run(["apt-get", "autoremove", "-y"], "Failed to remove unused packages")


def btrfs_in_use(fstab: Path = Path("/etc/fstab")) -> bool:
    try:
        if "btrfs" in fstab.read_text():
            return True
    except OSError:
        pass
    try:
        result = run_command(["findmnt", "-t", "btrfs"], check=False)
    except OSError:
        return False
    return result.returncode == 0


@contextlib.contextmanager
def btrfs_hook_suspended(
    pm: AptPackageManager, hook: Path = Path(BTRFS_HOOK)
) -> Iterator[Outcome]:
    """
    Keep the initramfs btrfs hook from breaking package configuration.

    With btrfs in use the hook needs btrfs-progs; otherwise the hook is moved
    aside for the duration and restored afterwards. Yields the Outcome of
    that preparation.
    """
    disabled = hook.with_name(hook.name + ".disabled")
    moved = False
    outcome = Outcome.ok()
    if hook.is_file():
        if btrfs_in_use():
            logger.info("BTRFS filesystem detected, ensuring btrfs-progs is installed")
            outcome = pm.install(["btrfs-progs"])
        else:
            logger.info("BTRFS not in use, temporarily disabling btrfs hook")
            try:
                hook.rename(disabled)
                moved = True
            except OSError as e:
                outcome = Outcome.recoverable(
                    f"Failed to disable btrfs hook {hook}: {e}",
                    "initramfs updates might fail during package configuration",
                )
    try:
        yield outcome
    finally:
        if moved and disabled.exists():
            try:
                disabled.rename(hook)
                logger.info("Restored btrfs hook")
            except OSError as e:
                logger.error(f"Failed to restore btrfs hook, run: mv {disabled} {hook} ({e})")


# ----------------------------------------------------------------
# Service Manager and Validators
# ----------------------------------------------------------------
class ServiceManager:
    """systemctl wrapper."""

    def is_active(self, name: str) -> bool:
        try:
            result = run_command(["systemctl", "is-active", "--quiet", name], check=False)
        except OSError:
            return False
        return result.returncode == 0

    def restart(self, name: str) -> Outcome:
        return attempt(
            ["systemctl", "restart", name],
            f"Failed to restart {name} service",
            f"Check the logs with 'journalctl -xeu {name}'",
        )


class SshdValidator:
    """``sshd -t`` syntax check; passes with a warning when sshd is absent."""

    def __init__(self, binary: str = "sshd") -> None:
        self.binary = binary

    def check(self, path: Path) -> Outcome:
        sshd = shutil.which(self.binary) or (
            "/usr/sbin/sshd" if os.access("/usr/sbin/sshd", os.X_OK) else None
        )
        if sshd is None:
            logger.warning("Could not validate SSH configuration (sshd command not available)")
            return Outcome.ok("SSH configuration not validated")
        # sshd -t needs its privilege separation directory
        with contextlib.suppress(OSError):
            Path("/run/sshd").mkdir(mode=0o755, exist_ok=True)
        outcome = attempt(
            [sshd, "-t", "-f", str(path)],
            "SSH configuration is invalid",
            "Reverting to backup",
        )
        if outcome.is_ok:
            logger.info("SSH configuration is valid")
        return outcome


# ----------------------------------------------------------------
# Accounts
# ----------------------------------------------------------------
def user_exists(username: str) -> bool:
    try:
        result = run_command(["id", username], check=False)
    except OSError:
        return False
    return result.returncode == 0


def create_user(username: str) -> Outcome:
    return attempt(
        ["useradd", "-m", "-s", "/bin/bash", username],
        f"Failed to create user {username}",
        "User creation error",
        fatal=True,
    )


def set_password(username: str, password: str) -> Outcome:
    try:
        subprocess.run(
            ["chpasswd"],
            input=f"{username}:{password}\n",
            text=True,
            capture_output=True,
            check=True,
            timeout=OPERATION_TIMEOUT,
        )
    except CommandError as e:
        return Outcome.fatal(
            f"Failed to set password for {username}: {_describe(e)}",
            "Password setup error",
        )
    return Outcome.ok()


def add_to_group(username: str, group: str) -> Outcome:
    return attempt(
        ["usermod", "-aG", group, username],
        f"Failed to add {username} to {group} group",
        "User will not have administrative privileges",
    )


def in_group(username: str, group: str) -> bool:
    try:
        result = run_command(["groups", username], check=False)
    except OSError:
        return False
    return group in result.stdout.split(":")[-1].split()


# ----------------------------------------------------------------
# Preflight Checks
# ----------------------------------------------------------------
def check_root() -> Outcome:
    if os.geteuid() != 0:
        return Outcome.fatal(
            "This script must be run as root or with sudo privileges",
            "Try running it again with sudo",
        )
    return Outcome.ok("Running as root")


def missing_tools(tools: Sequence[str]) -> List[str]:
    return [tool for tool in tools if not command_exists(tool)]


def read_os_release(path: Path = Path(OS_RELEASE)) -> Dict[str, str]:
    info: Dict[str, str] = {}
    try:
        text = path.read_text()
    except OSError:
        return info
    for line in text.splitlines():
        if "=" in line:
            key, _, value = line.partition("=")
            info[key.strip()] = value.strip().strip('"')
    return info


def check_os(path: Path = Path(OS_RELEASE)) -> Outcome:
    info = read_os_release(path)
    if info.get("ID", "").lower() != "ubuntu" and "ubuntu" not in info.get("ID_LIKE", "").lower():
        return Outcome.recoverable(
            "This script is designed for Ubuntu systems",
            f"Your system: {info.get('PRETTY_NAME', 'unknown')}",
        )
    return Outcome.ok(f"Ubuntu system detected: {info.get('VERSION', '')}")


def check_disk_space(path: str = "/", min_gb: float = MIN_FREE_DISK_GB) -> Outcome:
    free_gb = shutil.disk_usage(path).free / (1024 ** 3)
    if free_gb < min_gb:
        return Outcome.recoverable(
            f"Less than {min_gb:g}GB of free disk space available ({free_gb:.2f}GB)",
            "Updates might fail",
        )
    return Outcome.ok(f"Available disk space: {free_gb:.1f}GB")


def check_reboot_pending(flag: Path = Path(REBOOT_REQUIRED)) -> Outcome:
    if flag.exists():
        return Outcome.recoverable(
            "System reboot is pending",
            "It's recommended to reboot before running this script",
        )
    return Outcome.ok("No reboot pending")


def port_in_use(port: int) -> bool:
    """True when ``ss`` lists a socket bound to ``port``."""
    if not command_exists("ss"):
        return False
    try:
        result = run_command(["ss", "-tuln"], check=False)
    except OSError:
        return False
    for line in result.stdout.splitlines()[1:]:
        fields = line.split()
        if len(fields) >= 5 and fields[4].rsplit(":", 1)[-1] == str(port):
            return True
    return False


def hostname() -> str:
    try:
        return run_command(["hostname"]).stdout.strip()
    except CommandError:
        return "localhost"

"""
VPS Harden
----------

Secure a fresh Ubuntu VPS in one run:

  • System package maintenance (broken packages, updates, upgrades)
  • New sudo user with a chosen or generated password
  • SSH hardening (custom port, no root login) with backup and rollback
  • UFW firewall: deny incoming, allow SSH, HTTP and HTTPS

and optionally install an Xray VLESS + REALITY proxy with a QR connection
profile.

Usage:
  sudo vps-harden harden [--username NAME] [--port PORT] [--yes]
  sudo vps-harden proxy
"""

import signal
import sys
from typing import Any, Optional

import click
from rich.traceback import install as install_rich_traceback

from . import ui
from .config import APP_NAME, LOG_FILE, SSHD_CONFIG, VERSION, RunConfig
from .escalation import EscalationController
from .logsetup import setup_logger
from .models import SetupInterrupted
from .orchestrator import ProxySetup, VPSSetup
from .validation import parse_port, validate_password, validate_username


def _terminate(signum: int, frame: Any) -> None:
    raise SetupInterrupted(signal.Signals(signum).name, 128 + signum)


def _install_signal_handlers() -> None:
    signal.signal(signal.SIGTERM, _terminate)
    signal.signal(signal.SIGHUP, _terminate)


def _username(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Optional[str]:
    if value is not None:
        error = validate_username(value)
        if error:
            raise click.BadParameter(error)
    return value


def _port(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return parse_port(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


def _password(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Optional[str]:
    if value:
        error = validate_password(value)
        if error:
            raise click.BadParameter(error)
    return value


def _start(log_file: str, debug: bool) -> None:
    install_rich_traceback(show_locals=False)
    _install_signal_handlers()
    try:
        setup_logger(log_file, debug=debug)
    except OSError as e:
        ui.print_warning(f"Could not set up logging to {log_file}: {e}")
    ui.console.print(ui.create_header(APP_NAME))


@click.group()
@click.version_option(VERSION, prog_name=APP_NAME)
@click.option("--log-file", default=LOG_FILE, show_default=True, help="Run log location")
@click.option(
    "--yes", "-y", "assume_yes", is_flag=True, help="Continue past recoverable errors without asking"
)
@click.option("--debug", is_flag=True, help="Show debug output on the console")
@click.pass_context
def main(ctx: click.Context, log_file: str, assume_yes: bool, debug: bool) -> None:
    """Harden a fresh Ubuntu VPS and optionally install an Xray proxy."""
    ctx.obj = {"log_file": log_file, "assume_yes": assume_yes, "debug": debug}


@main.command()
@click.option("--username", callback=_username, help="User to create or reuse")
@click.option(
    "--password",
    envvar="VPS_HARDEN_PASSWORD",
    callback=_password,
    help="Password for a new user (blank: prompt or generate)",
)
@click.option("--port", callback=_port, help="New SSH port (1024-65535)")
@click.option(
    "--sshd-config", default=SSHD_CONFIG, show_default=True, help="sshd configuration file"
)
@click.option("--keep-firewall-rules", is_flag=True, help="Do not reset existing UFW rules")
@click.pass_obj
def harden(
    obj: dict,
    username: Optional[str],
    password: Optional[str],
    port: Optional[int],
    sshd_config: str,
    keep_firewall_rules: bool,
) -> None:
    """Update packages, create a sudo user, harden SSH and enable the firewall."""
    _start(obj["log_file"], obj["debug"])
    base = RunConfig(
        username="",
        log_file=obj["log_file"],
        sshd_config=sshd_config,
        reset_firewall=not keep_firewall_rules,
        assume_yes=obj["assume_yes"],
    )
    controller = EscalationController(assume_yes=obj["assume_yes"])
    setup = VPSSetup(controller)
    sys.exit(setup.run(base, username=username, password=password, port=port))


@main.command()
@click.pass_obj
def proxy(obj: dict) -> None:
    """Install Xray (VLESS + REALITY), enable BBR and print the connection profile."""
    _start(obj["log_file"], obj["debug"])
    controller = EscalationController(assume_yes=obj["assume_yes"])
    sys.exit(ProxySetup(controller).run())

"""
Run sequencing: the hardening run (packages, user, SSH, firewall) and the
proxy run (Xray install, secret material, BBR, connection profile).

Passes hand their Outcomes to ``escalate``; an abort raises SetupAborted and
stops the run with completed passes left in place. Only the Guard rolls back,
and only within its own pass.
"""

import contextlib
import datetime
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from rich.prompt import Prompt
from rich.text import Text

from . import ui
from .config import (
    BBR_SETTINGS,
    DEFAULT_SSH_PORT,
    PROXY_TOOLS,
    QRCODE_FILE,
    REBOOT_REQUIRED,
    REQUIRED_TOOLS,
    SSHD_BUILTIN_PORT,
    SSH_SERVICES,
    SYSCTL_CONFIG,
    XRAY_CONFIG,
    XRAY_DEST,
    XRAY_FLOW,
    XRAY_PORT,
    XRAY_SERVER_NAMES,
    RunConfig,
)
from .directives import DirectiveStore
from .escalation import EscalationController
from .firewall import UfwFirewall, apply_rule_set
from .guard import BackupGuard
from .keymaterial import SecretMaterialResolver
from .models import (
    Decision,
    FirewallRule,
    Outcome,
    SecretMaterial,
    SetupAborted,
    SetupInterrupted,
)
from .proxy import (
    ConnectionProfile,
    XrayGenerator,
    build_vless_link,
    current_congestion_control,
    install_xray,
    public_ip,
    render_qr_terminal,
    save_qr_image,
    sysctl_reload,
    write_server_config,
)
from .system import (
    AptPackageManager,
    CommandError,
    ServiceManager,
    SshdValidator,
    add_to_group,
    btrfs_hook_suspended,
    check_disk_space,
    check_os,
    check_reboot_pending,
    check_root,
    create_user,
    hostname,
    in_group,
    missing_tools,
    port_in_use,
    set_password,
    user_exists,
)
from .validation import generate_password, parse_port, validate_password, validate_username

logger = logging.getLogger(__name__)

AskProvider = Callable[..., str]


def rich_ask(question: str, default: Optional[str] = None, password: bool = False) -> str:
    return Prompt.ask(question, console=ui.console, default=default, password=password) or ""


class Orchestrator:
    """Phase bookkeeping, escalation and interruption handling shared by both runs."""

    PHASES: List[str] = []

    def __init__(self, controller: EscalationController, guard: Optional[BackupGuard] = None):
        self.controller = controller
        self.guard = guard or BackupGuard()
        self.start_time = time.time()
        self.current_phase: Optional[str] = None
        self.status: Dict[str, Dict[str, str]] = {
            name: {"status": "pending", "message": ""} for name in self.PHASES
        }

    def escalate(self, outcome: Outcome, question: Optional[str] = None) -> Outcome:
        """Hand ``outcome`` to the controller; raise SetupAborted on abort."""
        args = (outcome,) if question is None else (outcome, question)
        decision = self.controller.resolve(*args)
        if decision is Decision.ABORT:
            raise SetupAborted(outcome)
        if not outcome.is_ok and self.current_phase:
            self.status[self.current_phase] = {"status": "failed", "message": outcome.message}
        return outcome

    @contextlib.contextmanager
    def phase(self, name: str, title: str) -> Iterator[None]:
        self.current_phase = name
        ui.print_section(title)
        logger.info(f"--- {title} ---")
        self.status[name] = {"status": "in_progress", "message": ""}
        try:
            yield
        except (KeyboardInterrupt, SetupInterrupted):
            self.status[name] = {"status": "failed", "message": "Interrupted"}
            raise
        except SetupAborted as e:
            self.status[name] = {"status": "failed", "message": str(e)}
            raise
        if self.status[name]["status"] == "in_progress":
            self.status[name] = {"status": "success", "message": self._elapsed()}

    def _elapsed(self) -> str:
        elapsed = time.time() - self.start_time
        hours, remainder = divmod(elapsed, 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{int(hours)}h {int(minutes)}m {int(seconds)}s"

    def report_interruption(self, signal_name: str) -> None:
        """Log where the run stopped and which backups it leaves behind."""
        where = self.current_phase or "startup"
        logger.error(f"Interrupted by {signal_name} during {where}")
        ui.print_warning(f"Script interrupted during {where}!")
        for record in self.guard.backups:
            logger.info(f"Backup kept: {record.backup_path}")
            ui.print_message(f"Backup kept: {record.backup_path}")

    def execute(self, steps: Callable[[], None]) -> int:
        """Run ``steps``; returns the process exit status."""
        try:
            steps()
        except KeyboardInterrupt:
            self.report_interruption("SIGINT")
            return 130
        except SetupInterrupted as e:
            self.report_interruption(e.signal_name)
            return e.exit_code
        except SetupAborted as e:
            logger.error(f"Setup aborted: {e}")
            if self.guard.backups:
                ui.print_message(
                    "Backups kept: " + ", ".join(str(r.backup_path) for r in self.guard.backups)
                )
            return e.exit_code
        return 0

    def ensure_tools(self, tools: List[str], packages: AptPackageManager) -> None:
        missing = missing_tools(tools)
        if not missing:
            ui.print_success("All required tools are available")
            return
        ui.print_warning(f"Missing tools: {', '.join(missing)}. Installing them now...")
        outcome = packages.update()
        if not outcome.is_ok:
            self.escalate(Outcome.fatal(outcome.message, "Please check your internet connection"))
        for tool in missing:
            self.escalate(packages.install([tool]))


# ----------------------------------------------------------------
# Hardening Run
# ----------------------------------------------------------------
class VPSSetup(Orchestrator):
    """Main class for the VPS security setup."""

    PHASES = [
        "preflight",
        "system_checks",
        "parameters",
        "packages",
        "user_setup",
        "ssh",
        "firewall",
        "summary",
    ]

    def __init__(
        self,
        controller: EscalationController,
        packages: Optional[AptPackageManager] = None,
        services: Optional[ServiceManager] = None,
        firewall: Optional[UfwFirewall] = None,
        validator: Optional[Callable[[Path], Outcome]] = None,
        guard: Optional[BackupGuard] = None,
        ask: Optional[AskProvider] = None,
    ) -> None:
        super().__init__(controller, guard)
        self.packages = packages or AptPackageManager()
        self.services = services or ServiceManager()
        self.firewall = firewall or UfwFirewall()
        self.validator = validator or SshdValidator().check
        self.ask = ask or rich_ask
        self.config: Optional[RunConfig] = None

    def run(
        self,
        base: RunConfig,
        username: Optional[str] = None,
        password: Optional[str] = None,
        port: Optional[int] = None,
    ) -> int:
        def steps() -> None:
            self.phase_preflight()
            self.phase_system_checks()
            self.config = self.phase_parameters(base, username, password, port)
            self.phase_packages()
            self.phase_user_setup()
            self.phase_ssh()
            self.phase_firewall()
            self.phase_summary()

        return self.execute(steps)

    # Phase 1: preflight ------------------------------------------------
    def phase_preflight(self) -> None:
        with self.phase("preflight", "Checking Required Tools"):
            self.escalate(check_root())
            self.ensure_tools(REQUIRED_TOOLS, self.packages)

    # Phase 2: informational checks --------------------------------------
    def phase_system_checks(self) -> None:
        with self.phase("system_checks", "Checking System"):
            for check in (check_os, check_disk_space, check_reboot_pending):
                outcome = check()
                if outcome.is_ok:
                    ui.print_success(outcome.message)
                self.escalate(outcome, "Do you want to continue anyway?")

    # Phase 3: operator parameters ---------------------------------------
    def phase_parameters(
        self,
        base: RunConfig,
        username: Optional[str] = None,
        password: Optional[str] = None,
        port: Optional[int] = None,
    ) -> RunConfig:
        with self.phase("parameters", "Collecting User Information"):
            name, exists = self._collect_username(username, base.assume_yes)
            secret, generated = ("", False) if exists else self._collect_password(password)
            ssh_port = port if port is not None else self._collect_port()
            if port is not None and port_in_use(port):
                self.escalate(
                    Outcome.recoverable(
                        f"Port {port} is already in use",
                        "sshd may fail to bind it; rerun with a different --port",
                    ),
                    "Use this port anyway?",
                )
            config = RunConfig(
                username=name,
                ssh_port=ssh_port,
                password=secret,
                password_generated=generated,
                user_exists=exists,
                log_file=base.log_file,
                sshd_config=base.sshd_config,
                reset_firewall=base.reset_firewall,
                assume_yes=base.assume_yes,
            )
            ui.print_success("User information collected successfully")
            logger.info(f"Parameters: user={name} existing={exists} port={ssh_port}")
            return config

    def _collect_username(self, given: Optional[str], assume_yes: bool) -> Tuple[str, bool]:
        while True:
            name = given if given is not None else self.ask("Enter new username to create").strip()
            error = validate_username(name)
            if error:
                if given is not None:
                    self.escalate(Outcome.fatal(error))
                ui.print_error(error)
                continue
            if not user_exists(name):
                return name, False
            ui.print_warning(f"User {name} already exists")
            if assume_yes or self.controller.confirm("Use existing user?"):
                return name, True
            if given is not None:
                self.escalate(Outcome.fatal(f"User {name} already exists"))
            given = None

    def _collect_password(self, given: Optional[str]) -> Tuple[str, bool]:
        if given:
            error = validate_password(given)
            if error:
                self.escalate(Outcome.fatal(error))
            return given, False
        while True:
            secret = self.ask(
                "Enter password for new user (leave blank for auto-generated)",
                password=True,
            )
            if not secret:
                secret = generate_password()
                ui.print_warning(f"Auto-generated password: {secret}")
                ui.print_warning("PLEASE SAVE THIS PASSWORD NOW!")
                return secret, True
            error = validate_password(secret)
            if error:
                ui.print_error(error)
                continue
            return secret, False

    def _collect_port(self) -> int:
        while True:
            answer = self.ask(
                f"Enter new SSH port (default: {DEFAULT_SSH_PORT})", default=str(DEFAULT_SSH_PORT)
            )
            try:
                port = parse_port(answer or str(DEFAULT_SSH_PORT))
            except ValueError as e:
                ui.print_error(str(e))
                continue
            if port_in_use(port):
                ui.print_warning(f"Port {port} is already in use")
                if self.controller.confirm("Choose a different port?"):
                    continue
            return port

    # Phase 4: package maintenance ---------------------------------------
    def phase_packages(self) -> None:
        with self.phase("packages", "Updating System Packages"):
            pm = self.packages
            self.escalate(ui.run_with_progress("Fixing broken packages", pm.fix_broken))
            with btrfs_hook_suspended(pm) as hook:
                self.escalate(hook)
                self._notice(pm.configure_pending(), "All pending packages configured")
                self.escalate(ui.run_with_progress("Updating package lists", pm.update))
                if pm.is_installed("initramfs-tools"):
                    self._notice(pm.reinstall("initramfs-tools"), "initramfs-tools reinstalled")
                upgrade = ui.run_with_progress("Upgrading packages", pm.upgrade)
                if not upgrade.is_ok:
                    pm.fix_broken()
                    self.escalate(upgrade)
                if pm.held_back_count() > 0:
                    self._notice(pm.dist_upgrade(), "Held back packages installed")
            self._notice(pm.autoremove(), "Unnecessary packages removed")

    def _notice(self, outcome: Outcome, success: str) -> None:
        """Report a step whose failure is non-fatal and needs no confirmation."""
        if outcome.is_ok:
            ui.print_success(success)
        else:
            logger.warning(f"{outcome.message}. This is non-fatal.")

    # Phase 5: user account ----------------------------------------------
    def phase_user_setup(self) -> None:
        config = self._require_config()
        with self.phase("user_setup", "Creating User"):
            if config.user_exists:
                ui.print_message(f"Using existing user: {config.username}")
            else:
                ui.print_step(f"Creating new user: {config.username}")
                self.escalate(create_user(config.username))
                self.escalate(set_password(config.username, config.password))
                ui.print_success(f"User {config.username} created successfully")

            outcome = self.escalate(add_to_group(config.username, "sudo"))
            if outcome.is_ok:
                ui.print_success(f"User {config.username} added to sudo group")
            if in_group(config.username, "sudo"):
                ui.print_success(f"Sudo group membership verified for {config.username}")
            else:
                ui.print_warning(f"Could not verify sudo access for {config.username}")

    # Phase 6: SSH hardening ---------------------------------------------
    def phase_ssh(self) -> Outcome:
        config = self._require_config()
        with self.phase("ssh", "Configuring SSH"):
            path = Path(config.sshd_config)
            if not path.is_file():
                ui.print_step("SSH config not found. Installing OpenSSH server...")
                outcome = self.packages.install(["openssh-server"])
                if not outcome.is_ok:
                    self.escalate(Outcome.fatal(outcome.message, "SSH setup failed"))

            store = DirectiveStore(path)
            outcome = self.guard.run(
                store, config.ssh_directives, self.validator, activate=self._restart_ssh
            )
            if outcome.is_ok:
                ui.print_success("SSH configuration updated:")
                ui.print_message("Root login disabled")
                ui.print_message(f"SSH port changed to {config.ssh_port}")
                ui.print_message("Password authentication enabled")
                ui.print_message("Public key authentication enabled")
            return self.escalate(outcome)

    def _restart_ssh(self) -> Outcome:
        for service in SSH_SERVICES:
            if self.services.is_active(service):
                outcome = self.services.restart(service)
                if outcome.is_ok:
                    ui.print_success("SSH service restarted successfully")
                return outcome
        ui.print_warning("SSH service not found, please start it manually")
        ui.print_message("Try: systemctl start ssh")
        return Outcome.ok("SSH service not running")

    # Phase 7: firewall ----------------------------------------------------
    def phase_firewall(self) -> Outcome:
        config = self._require_config()
        with self.phase("firewall", "Configuring Firewall"):
            if not self.firewall.available():
                ui.print_step("UFW not found, installing...")
                outcome = self.escalate(self.packages.install(["ufw"]))
                if not outcome.is_ok:
                    return outcome

            logger.info(f"Current firewall status:\n{self.firewall.status()}")
            rules = config.firewall_rules
            live_port = self.live_ssh_port()
            if live_port != config.ssh_port:
                logger.warning(f"sshd still uses port {live_port}, allowing it as well")
                ui.print_warning(f"SSH is still configured on port {live_port}; keeping it open")
                rules = [FirewallRule(live_port, "tcp", "SSH")] + rules
            outcome = apply_rule_set(
                self.firewall, rules, self.escalate, reset=config.reset_firewall
            )
            if outcome.is_ok:
                ui.print_success("Firewall enabled successfully")
                logger.info(f"Current firewall status:\n{self.firewall.status(verbose=True)}")
            return self.escalate(outcome)

    def live_ssh_port(self) -> int:
        """Port sshd is configured for; after a reverted SSH pass it is the old one."""
        config = self._require_config()
        store = DirectiveStore(config.sshd_config)
        try:
            store.reload()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cannot read {store.path}: {e}")
            return config.ssh_port
        value = store.get("Port")
        if value is None:
            return SSHD_BUILTIN_PORT
        try:
            return int(value)
        except ValueError:
            return config.ssh_port

    # Phase 8: summary -------------------------------------------------------
    def phase_summary(self) -> None:
        config = self._require_config()
        with self.phase("summary", "Setup Summary"):
            lines = [
                "VPS SECURITY SETUP COMPLETE",
                "",
                f"New user: {config.username}",
            ]
            if not config.user_exists:
                lines.append(f"Password: {config.password}")
            ssh_port = self.live_ssh_port()
            lines.append(f"SSH Port: {ssh_port}")

            status = self.firewall.status()
            if "Status: active" in status:
                rules = [line for line in status.splitlines() if not line.startswith("Status")]
                lines += ["", "FIREWALL RULES"] + [r for r in rules if r.strip()]

            lines += [
                "",
                "NEXT STEPS",
                f"1. Log in with the new user: ssh {config.username}@your_server_ip -p {ssh_port}",
                "2. Test sudo access with: sudo whoami",
            ]
            if Path(REBOOT_REQUIRED).exists():
                lines.append("A system reboot is recommended to complete all updates: sudo reboot")
            lines += ["", f"Log file saved to: {config.log_file}"]

            ui.display_panel("\n".join(lines), style=ui.NordColors.GREEN, title="Success")
        ui.print_status_report(self.status)
        logger.info(f"Script completed at: {datetime.datetime.now():%Y-%m-%d %H:%M:%S}")

    def _require_config(self) -> RunConfig:
        if self.config is None:
            raise RuntimeError("Parameters have not been collected")
        return self.config


# ----------------------------------------------------------------
# Proxy Run
# ----------------------------------------------------------------
class ProxySetup(Orchestrator):
    """Xray VLESS + REALITY installation and connection profile."""

    PHASES = ["preflight", "install", "secrets", "service", "bbr", "profile"]

    def __init__(
        self,
        controller: EscalationController,
        packages: Optional[AptPackageManager] = None,
        services: Optional[ServiceManager] = None,
        generator: Optional[XrayGenerator] = None,
        guard: Optional[BackupGuard] = None,
        config_path: str = XRAY_CONFIG,
        sysctl_path: str = SYSCTL_CONFIG,
        qr_path: str = QRCODE_FILE,
    ) -> None:
        super().__init__(controller, guard)
        self.packages = packages or AptPackageManager()
        self.services = services or ServiceManager()
        self.generator = generator or XrayGenerator()
        self.config_path = Path(config_path)
        self.sysctl_path = Path(sysctl_path)
        self.qr_path = Path(qr_path)
        self.material: Optional[SecretMaterial] = None
        self.profile: Optional[ConnectionProfile] = None

    def run(self) -> int:
        def steps() -> None:
            self.phase_preflight()
            self.phase_install()
            self.phase_secrets()
            self.phase_service()
            self.phase_bbr()
            self.phase_profile()
            ui.print_status_report(self.status)

        return self.execute(steps)

    def phase_preflight(self) -> None:
        with self.phase("preflight", "Checking Required Dependencies"):
            self.escalate(check_root())
            self.ensure_tools(PROXY_TOOLS, self.packages)

    def phase_install(self) -> None:
        with self.phase("install", "Installing XRay"):
            self.escalate(ui.run_with_progress("Installing XRay", install_xray))
            ui.print_success("XRay installed successfully")

    def phase_secrets(self) -> SecretMaterial:
        with self.phase("secrets", "Generating UUID and Keys"):
            generated = self.escalate(self._generate())
            uuid_output, key_output = generated.data
            logger.debug(f"Raw key output:\n{key_output}")
            outcome = self.escalate(
                SecretMaterialResolver(self.generator.x25519).resolve(uuid_output, key_output)
            )
            self.material = outcome.data
            ui.print_message(f"UUID: {self.material.uuid}")
            ui.print_message(f"Public Key: {self.material.public_key}")
            return self.material

    def _generate(self) -> Outcome:
        try:
            outputs = (self.generator.uuid(), self.generator.x25519())
        except CommandError as e:
            return Outcome.fatal(
                f"Failed to run the key generator: {e}",
                "Check that xray is installed in /usr/local/bin",
            )
        return Outcome.ok("UUID and key pair generated", data=outputs)

    def phase_service(self) -> None:
        material = self._require_material()
        with self.phase("service", "Configuring XRay"):
            self.escalate(write_server_config(self.config_path, material))
            outcome = self.services.restart("xray")
            if not outcome.is_ok:
                self.escalate(Outcome.fatal(outcome.message, outcome.remediation_hint))
            if not self.services.is_active("xray"):
                self.escalate(
                    Outcome.fatal(
                        "XRay service is not running",
                        "Check the logs with 'journalctl -xeu xray'",
                    )
                )
            ui.print_success("XRay service is running")

    def phase_bbr(self) -> None:
        with self.phase("bbr", "Enabling BBR Acceleration"):
            if current_congestion_control() == "bbr":
                ui.print_success("BBR is already enabled")
                return
            try:
                self.sysctl_path.touch(exist_ok=True)
            except OSError as e:
                self.escalate(Outcome.recoverable(f"Cannot create {self.sysctl_path}: {e}"))
                return
            store = DirectiveStore(self.sysctl_path, separator="=")
            outcome = self.escalate(self.guard.run(store, BBR_SETTINGS, sysctl_reload))
            if not outcome.is_ok:
                return
            algorithm = current_congestion_control()
            if algorithm == "bbr":
                ui.print_success("BBR has been enabled successfully")
            else:
                ui.print_warning(f"BBR could not be enabled. Current algorithm: {algorithm}")

    def phase_profile(self) -> ConnectionProfile:
        material = self._require_material()
        with self.phase("profile", "Connection Profile"):
            server = public_ip()
            if not server:
                self.escalate(
                    Outcome.recoverable(
                        "Could not determine the public IP address",
                        "The link will use a placeholder; replace it with your server address",
                    )
                )
                server = "your_server_ip"
            remark = f"{hostname()}-{datetime.datetime.now():%m%d}"
            link = build_vless_link(material, server, remark)
            self.profile = ConnectionProfile(link=link, server=server, qr_path=self.qr_path)

            qr = self.escalate(render_qr_terminal(link))
            if qr.is_ok:
                ui.console.print(Text.from_ansi(qr.data))
            self.escalate(save_qr_image(link, self.qr_path))

            ui.display_panel(
                "\n".join(
                    [
                        "Protocol: VLESS",
                        f"Server Address: {server}",
                        f"Port: {XRAY_PORT}",
                        f"UUID: {material.uuid}",
                        f"Flow: {XRAY_FLOW}",
                        "Network: tcp",
                        "Security: reality",
                        f"Server Names: {', '.join(XRAY_SERVER_NAMES)}",
                        f"Destination: {XRAY_DEST}",
                        f"Public Key: {material.public_key}",
                        "",
                        "VLESS Link:",
                        link,
                        "",
                        f"QR Code has been saved to: {self.qr_path}",
                        "Log files are located at: /var/log/xray/",
                    ]
                ),
                style=ui.NordColors.GREEN,
                title="XRay Connection Information",
            )
            return self.profile

    def _require_material(self) -> SecretMaterial:
        if self.material is None:
            raise RuntimeError("Secret material has not been resolved")
        return self.material

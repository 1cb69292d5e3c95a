# ----------------------------------------------------------------
# Global Configuration
# ----------------------------------------------------------------
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from .models import Directive, FirewallRule

APP_NAME: str = "VPS Harden"
VERSION: str = "1.0.0"
OPERATION_TIMEOUT: int = 300  # 5 minutes default timeout for operations

LOG_FILE: str = "/var/log/vps_security_setup.log"
SSHD_CONFIG: str = "/etc/ssh/sshd_config"
SYSCTL_CONFIG: str = "/etc/sysctl.conf"
OS_RELEASE: str = "/etc/os-release"
REBOOT_REQUIRED: str = "/var/run/reboot-required"
BTRFS_HOOK: str = "/usr/share/initramfs-tools/hooks/btrfs"

DEFAULT_SSH_PORT: int = 8422
SSHD_BUILTIN_PORT: int = 22  # sshd listens here when no Port line is active
MIN_SSH_PORT: int = 1024
MAX_SSH_PORT: int = 65535
MIN_PASSWORD_LENGTH: int = 8
MIN_FREE_DISK_GB: float = 1.0

REQUIRED_TOOLS: List[str] = ["wget", "openssl", "sed", "grep", "findmnt"]
SSH_SERVICES: Tuple[str, ...] = ("ssh", "sshd")

# Web ports opened next to SSH
WEB_RULES: List[FirewallRule] = [
    FirewallRule(80, "tcp", "HTTP"),
    FirewallRule(443, "tcp", "HTTPS"),
]

# Xray / VLESS REALITY
XRAY_INSTALLER_URL: str = "https://github.com/XTLS/Xray-install/raw/main/install-release.sh"
XRAY_BINARY: str = "/usr/local/bin/xray"
XRAY_CONFIG: str = "/usr/local/etc/xray/config.json"
XRAY_PORT: int = 443
XRAY_FLOW: str = "xtls-rprx-vision"
XRAY_DEST: str = "www.apple.com:443"
XRAY_SNI: str = "www.apple.com"
XRAY_SERVER_NAMES: List[str] = ["images.apple.com", "www.apple.com", "www.apple.com.cn"]
XRAY_FINGERPRINT: str = "chrome"
PROXY_TOOLS: List[str] = ["curl", "qrencode"]
QRCODE_FILE: str = "/root/xray_vless_qrcode.png"
PUBLIC_IP_URL: str = "ifconfig.me"

BBR_SETTINGS: List[Directive] = [
    Directive("net.core.default_qdisc", "fq"),
    Directive("net.ipv4.tcp_congestion_control", "bbr"),
]


@dataclass(frozen=True)
class RunConfig:
    """Parameters collected once per run and handed to every pass."""

    username: str
    ssh_port: int = DEFAULT_SSH_PORT
    password: str = ""
    password_generated: bool = False
    user_exists: bool = False
    log_file: str = LOG_FILE
    sshd_config: str = SSHD_CONFIG
    reset_firewall: bool = True
    assume_yes: bool = False

    @property
    def ssh_directives(self) -> List[Directive]:
        """Target sshd_config directives for the hardening pass."""
        return [
            Directive("Port", str(self.ssh_port)),
            Directive("PermitRootLogin", "no"),
            Directive("PasswordAuthentication", "yes"),
            Directive("PubkeyAuthentication", "yes"),
        ]

    @property
    def firewall_rules(self) -> List[FirewallRule]:
        """Allow rules, SSH first so it is in place before the firewall is enabled."""
        return [FirewallRule(self.ssh_port, "tcp", "SSH")] + list(WEB_RULES)

"""
Xray VLESS + REALITY installer pieces: key generation, server config,
BBR congestion control and the client connection profile.
"""

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .config import (
    PUBLIC_IP_URL,
    XRAY_BINARY,
    XRAY_DEST,
    XRAY_FINGERPRINT,
    XRAY_FLOW,
    XRAY_INSTALLER_URL,
    XRAY_PORT,
    XRAY_SERVER_NAMES,
    XRAY_SNI,
)
from .directives import atomic_write
from .guard import create_backup
from .models import BackupRecord, Outcome, SecretMaterial
from .system import CommandError, attempt, run_command

logger = logging.getLogger(__name__)


class XrayGenerator:
    """Secret generator backed by the ``xray`` binary."""

    def __init__(self, binary: str = XRAY_BINARY) -> None:
        self.binary = binary

    def resolve_binary(self) -> Optional[str]:
        if Path(self.binary).is_file():
            return self.binary
        return shutil.which("xray")

    def uuid(self) -> str:
        return run_command([self.resolve_binary() or self.binary, "uuid"]).stdout

    def x25519(self) -> str:
        return run_command([self.resolve_binary() or self.binary, "x25519"]).stdout


def install_xray(url: str = XRAY_INSTALLER_URL) -> Outcome:
    """Fetch the upstream install script and run its ``install`` action."""
    try:
        script = run_command(["curl", "-fsSL", url]).stdout
    except CommandError as e:
        return Outcome.fatal(
            f"Failed to download the Xray installer: {e}",
            "Check your internet connection",
        )
    return attempt(
        ["bash", "-s", "--", "install"],
        "Failed to install Xray",
        fatal=True,
        input=script,
        timeout=None,
    )


def render_server_config(material: SecretMaterial) -> Dict[str, Any]:
    """Server config: one VLESS inbound with REALITY on XRAY_PORT."""
    return {
        "log": {
            "loglevel": "debug",
            "access": "/var/log/xray/access.log",
            "error": "/var/log/xray/error.log",
        },
        "inbounds": [
            {
                "port": XRAY_PORT,
                "protocol": "vless",
                "settings": {
                    "clients": [{"id": material.uuid, "flow": XRAY_FLOW}],
                    "decryption": "none",
                },
                "streamSettings": {
                    "network": "tcp",
                    "security": "reality",
                    "realitySettings": {
                        "dest": XRAY_DEST,
                        "serverNames": list(XRAY_SERVER_NAMES),
                        "privateKey": material.private_key,
                        "shortIds": [""],
                    },
                },
                "sniffing": {
                    "enabled": True,
                    "destOverride": ["http", "tls", "quic"],
                    "routeOnly": True,
                },
            }
        ],
        "outbounds": [
            {"protocol": "freedom", "tag": "direct"},
            {"protocol": "blackhole", "tag": "blocked"},
        ],
    }


def write_server_config(path: Path, material: SecretMaterial) -> Outcome:
    """Write the server config, backing up any existing one first."""
    backup: Optional[BackupRecord] = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.is_file():
            backup = create_backup(path)
    except OSError as e:
        return Outcome.fatal(
            f"Failed to back up {path}: {e}",
            "Cannot proceed without a backup; no changes were made",
        )

    data = json.dumps(render_server_config(material), indent=4) + "\n"
    try:
        atomic_write(path, data.encode("utf-8"))
    except OSError as e:
        return Outcome.fatal(f"Failed to create XRay configuration: {e}")
    logger.info(f"XRay configuration written to {path}")
    return Outcome.ok("XRay configuration created", data=backup)


def percent_encode(text: str) -> str:
    """Percent-encode every byte, as ``xxd -plain`` piped through sed does."""
    return "".join(f"%{byte:02x}" for byte in text.encode("utf-8"))


def build_vless_link(material: SecretMaterial, server: str, remark: str) -> str:
    query = "&".join(
        [
            "encryption=none",
            f"flow={XRAY_FLOW}",
            "security=reality",
            f"sni={XRAY_SNI}",
            f"fp={XRAY_FINGERPRINT}",
            f"pbk={material.public_key}",
            "spx=%2F",
            "type=tcp",
            "headerType=none",
        ]
    )
    return f"vless://{material.uuid}@{server}:{XRAY_PORT}?{query}#{percent_encode(remark)}"


def public_ip(url: str = PUBLIC_IP_URL) -> str:
    try:
        return run_command(["curl", "-s", url], timeout=30).stdout.strip()
    except CommandError as e:
        logger.warning(f"Could not determine public IP: {e}")
        return ""


@dataclass(frozen=True)
class ConnectionProfile:
    link: str
    server: str
    qr_path: Path


def render_qr_terminal(link: str) -> Outcome:
    """ANSI QR code of ``link`` as the outcome's data."""
    try:
        result = run_command(["qrencode", "-t", "ANSI"], input=link)
    except CommandError as e:
        return Outcome.recoverable(f"Failed to generate QR code: {e}", "Is qrencode installed?")
    return Outcome.ok("QR code rendered", data=result.stdout)


def save_qr_image(link: str, path: Path) -> Outcome:
    outcome = attempt(
        ["qrencode", "-s", "10", "-o", str(path)],
        f"Failed to save QR code to {path}",
        "Is qrencode installed?",
        input=link,
    )
    if outcome.is_ok:
        logger.info(f"QR code saved to {path}")
    return outcome


def current_congestion_control() -> str:
    try:
        return run_command(["sysctl", "-n", "net.ipv4.tcp_congestion_control"]).stdout.strip()
    except CommandError:
        return ""


def sysctl_reload(path: Path) -> Outcome:
    """Validator for sysctl.conf edits: load the file."""
    return attempt(
        ["sysctl", "-p", str(path)],
        "Failed to apply sysctl settings",
        "Check the kernel supports the tcp_bbr module",
    )

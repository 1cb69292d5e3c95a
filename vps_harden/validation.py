"""Rules for operator-supplied parameters."""

import base64
import re
import secrets
from typing import Optional

from .config import MAX_SSH_PORT, MIN_PASSWORD_LENGTH, MIN_SSH_PORT

USERNAME_RE = re.compile(r"^[a-z0-9_]+$")
PORT_RE = re.compile(r"[0-9]+")


def validate_username(username: str) -> Optional[str]:
    """Return an error message, or None when the name is acceptable."""
    if not username:
        return "Username cannot be empty"
    if not USERNAME_RE.match(username):
        return "Username must only contain lowercase letters, numbers, and underscores"
    return None


def validate_password(password: str) -> Optional[str]:
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password too short (minimum {MIN_PASSWORD_LENGTH} characters)"
    return None


def parse_port(value: str) -> int:
    """Parse an SSH port; raises ValueError outside [1024, 65535]."""
    value = value.strip()
    if not PORT_RE.fullmatch(value):
        raise ValueError(f"Invalid port {value!r}: not a number")
    port = int(value)
    if port < MIN_SSH_PORT or port > MAX_SSH_PORT:
        raise ValueError(
            f"Invalid port {port}. Please enter a number between "
            f"{MIN_SSH_PORT} and {MAX_SSH_PORT}"
        )
    return port


def generate_password(nbytes: int = 12) -> str:
    """Random password, equivalent to ``openssl rand -base64 12``."""
    return base64.b64encode(secrets.token_bytes(nbytes)).decode("ascii")

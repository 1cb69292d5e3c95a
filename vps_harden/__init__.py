"""
VPS Harden
----------

Provisioning toolkit for fresh Ubuntu VPS hosts: user creation, SSH hardening,
UFW firewall setup and an Xray (VLESS + REALITY) proxy installer, built on an
idempotent config-file mutator with backup, validation and rollback.
"""

from .config import APP_NAME, VERSION

__all__ = ["APP_NAME", "VERSION"]

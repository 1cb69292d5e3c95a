"""
Secret material for the proxy inbound.

The uuid and the x25519 key pair come from the ``xray`` binary as text. A
missing public key gets exactly one regeneration; the replacement pair is
taken whole, never mixed with the first generation.
"""

import logging
import subprocess
from typing import Callable, Optional, Tuple

from .models import Outcome, SecretMaterial

logger = logging.getLogger(__name__)

PRIVATE_KEY_PREFIX = "Private key: "
PUBLIC_KEY_PREFIX = "Public key: "


def _value_after(prefix: str, text: str) -> str:
    for line in text.splitlines():
        if line.startswith(prefix):
            return line[len(prefix):].strip()
    return ""


def parse_uuid(text: str) -> str:
    """First non-blank line of the generator output."""
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def parse_keypair(text: str) -> Tuple[str, str]:
    """Return ``(private_key, public_key)``; missing entries are empty strings."""
    return _value_after(PRIVATE_KEY_PREFIX, text), _value_after(PUBLIC_KEY_PREFIX, text)


class SecretMaterialResolver:
    """Turns generator output into a complete SecretMaterial or a fatal outcome."""

    def __init__(self, regenerate: Callable[[], str]) -> None:
        self.regenerate = regenerate

    def _fallback(self) -> Optional[Tuple[str, str]]:
        logger.warning("Public key missing from generator output, regenerating key pair")
        try:
            output = self.regenerate()
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Key pair regeneration failed: {e}")
            return None
        logger.debug(f"Fallback key output:\n{output}")
        return parse_keypair(output)

    def resolve(self, uuid_output: str, key_output: str) -> Outcome:
        uuid = parse_uuid(uuid_output)
        if not uuid:
            return Outcome.fatal(
                "Failed to extract UUID",
                "Check that the xray binary runs: xray uuid",
            )

        private_key, public_key = parse_keypair(key_output)
        if not public_key:
            pair = self._fallback()
            if pair is None or not pair[1]:
                return Outcome.fatal(
                    "Failed to generate public key using fallback method",
                    "Run 'xray x25519' manually and check its output",
                )
            private_key, public_key = pair
            logger.info("Public key generated using fallback method")

        if not private_key:
            return Outcome.fatal(
                "Failed to extract private key",
                "Run 'xray x25519' manually and check its output",
            )

        return Outcome.ok(
            "Secret material resolved",
            data=SecretMaterial(uuid=uuid, private_key=private_key, public_key=public_key),
        )

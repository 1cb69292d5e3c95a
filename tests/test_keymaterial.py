import subprocess

from vps_harden.keymaterial import SecretMaterialResolver, parse_keypair, parse_uuid
from vps_harden.models import SecretMaterial, Status

UUID_OUTPUT = "0b5a3f57-6a9e-4c47-9f43-2d1e0d6c7e11\n"
FULL_KEYS = "Private key: cPrIvAtE1111\nPublic key: pUbLiC1111\n"


class Regenerator:
    def __init__(self, *outputs):
        self.outputs = list(outputs)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return output


def test_parse_keypair():
    assert parse_keypair(FULL_KEYS) == ("cPrIvAtE1111", "pUbLiC1111")
    assert parse_keypair("Private key: abc\n") == ("abc", "")


def test_parse_uuid_skips_blank_lines():
    assert parse_uuid("\n  \n" + UUID_OUTPUT) == UUID_OUTPUT.strip()


def test_complete_output_needs_no_regeneration():
    regenerate = Regenerator()

    outcome = SecretMaterialResolver(regenerate).resolve(UUID_OUTPUT, FULL_KEYS)

    assert outcome.status is Status.OK
    assert outcome.data == SecretMaterial(
        "0b5a3f57-6a9e-4c47-9f43-2d1e0d6c7e11", "cPrIvAtE1111", "pUbLiC1111"
    )
    assert regenerate.calls == 0


def test_missing_public_key_replaces_whole_pair():
    regenerate = Regenerator("Private key: cPrIvAtE2222\nPublic key: pUbLiC2222\n")

    outcome = SecretMaterialResolver(regenerate).resolve(
        UUID_OUTPUT, "Private key: cPrIvAtE1111\n"
    )

    assert outcome.status is Status.OK
    assert outcome.data.private_key == "cPrIvAtE2222"
    assert outcome.data.public_key == "pUbLiC2222"
    assert regenerate.calls == 1


def test_regeneration_is_attempted_once():
    regenerate = Regenerator("Private key: x\n", "Private key: y\nPublic key: z\n")

    outcome = SecretMaterialResolver(regenerate).resolve(UUID_OUTPUT, "Private key: w\n")

    assert outcome.status is Status.FATAL
    assert regenerate.calls == 1


def test_regeneration_error_is_fatal():
    regenerate = Regenerator(subprocess.CalledProcessError(1, ["xray", "x25519"]))

    outcome = SecretMaterialResolver(regenerate).resolve(UUID_OUTPUT, "")

    assert outcome.status is Status.FATAL
    assert "fallback" in outcome.message


def test_empty_uuid_is_fatal_before_keys_are_checked():
    regenerate = Regenerator()

    outcome = SecretMaterialResolver(regenerate).resolve("", "Private key: a\n")

    assert outcome.status is Status.FATAL
    assert "UUID" in outcome.message
    assert regenerate.calls == 0


def test_empty_private_key_is_fatal():
    outcome = SecretMaterialResolver(Regenerator()).resolve(
        UUID_OUTPUT, "Private key: \nPublic key: pUbLiC1111\n"
    )

    assert outcome.status is Status.FATAL
    assert "private key" in outcome.message

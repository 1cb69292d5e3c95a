import json
import subprocess

import pytest

from vps_harden.models import Outcome, SecretMaterial, SetupAborted, Status
from vps_harden.orchestrator import ProxySetup
from vps_harden.proxy import (
    build_vless_link,
    percent_encode,
    render_server_config,
    write_server_config,
)

MATERIAL = SecretMaterial(
    uuid="0b5a3f57-6a9e-4c47-9f43-2d1e0d6c7e11",
    private_key="cPrIvAtE1111",
    public_key="pUbLiC1111",
)


class FakeGenerator:
    def __init__(self, uuid_output, *key_outputs):
        self.uuid_output = uuid_output
        self.key_outputs = list(key_outputs)

    def uuid(self):
        if isinstance(self.uuid_output, Exception):
            raise self.uuid_output
        return self.uuid_output

    def x25519(self):
        return self.key_outputs.pop(0)


@pytest.fixture
def make_proxy(tmp_path, fake_packages, fake_services):
    def make(controller, generator=None):
        return ProxySetup(
            controller,
            packages=fake_packages,
            services=fake_services,
            generator=generator,
            config_path=str(tmp_path / "xray" / "config.json"),
            sysctl_path=str(tmp_path / "sysctl.conf"),
            qr_path=str(tmp_path / "qrcode.png"),
        )

    return make


def test_percent_encode_covers_every_byte():
    assert percent_encode("vps-1018") == "%76%70%73%2d%31%30%31%38"


def test_vless_link():
    link = build_vless_link(MATERIAL, "203.0.113.7", "vps")

    assert link == (
        "vless://0b5a3f57-6a9e-4c47-9f43-2d1e0d6c7e11@203.0.113.7:443"
        "?encryption=none&flow=xtls-rprx-vision&security=reality&sni=www.apple.com"
        "&fp=chrome&pbk=pUbLiC1111&spx=%2F&type=tcp&headerType=none#%76%70%73"
    )


def test_server_config_carries_secret_material():
    config = render_server_config(MATERIAL)
    inbound = config["inbounds"][0]

    assert inbound["port"] == 443
    assert inbound["settings"]["clients"] == [
        {"id": MATERIAL.uuid, "flow": "xtls-rprx-vision"}
    ]
    reality = inbound["streamSettings"]["realitySettings"]
    assert reality["privateKey"] == MATERIAL.private_key
    assert reality["dest"] == "www.apple.com:443"
    assert MATERIAL.public_key not in json.dumps(config)


def test_existing_server_config_is_backed_up(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"old": true}\n')

    outcome = write_server_config(path, MATERIAL)

    assert outcome.status is Status.OK
    assert outcome.data.backup_path.read_text() == '{"old": true}\n'
    assert json.loads(path.read_text()) == render_server_config(MATERIAL)


def test_new_server_config_has_no_backup(tmp_path):
    path = tmp_path / "xray" / "config.json"

    outcome = write_server_config(path, MATERIAL)

    assert outcome.status is Status.OK
    assert outcome.data is None
    assert path.is_file()


class TestProxyPhases:
    def test_secrets_fall_back_to_fresh_pair(self, make_proxy, accepting_controller):
        generator = FakeGenerator(
            MATERIAL.uuid + "\n",
            "Private key: stale\n",
            "Private key: cPrIvAtE2222\nPublic key: pUbLiC2222\n",
        )
        setup = make_proxy(accepting_controller, generator)

        material = setup.phase_secrets()

        assert material == SecretMaterial(MATERIAL.uuid, "cPrIvAtE2222", "pUbLiC2222")
        assert setup.status["secrets"]["status"] == "success"

    def test_generator_failure_aborts(self, make_proxy, accepting_controller):
        generator = FakeGenerator(subprocess.CalledProcessError(127, ["xray", "uuid"]))
        setup = make_proxy(accepting_controller, generator)

        with pytest.raises(SetupAborted):
            setup.phase_secrets()

        assert setup.material is None

    def test_service_writes_config_and_restarts(
        self, make_proxy, accepting_controller, fake_services, tmp_path
    ):
        fake_services.active = {"xray": True}
        setup = make_proxy(accepting_controller)
        setup.material = MATERIAL

        setup.phase_service()

        assert fake_services.restarted == ["xray"]
        written = json.loads((tmp_path / "xray" / "config.json").read_text())
        assert written["inbounds"][0]["settings"]["clients"][0]["id"] == MATERIAL.uuid

    def test_stopped_service_aborts(self, make_proxy, accepting_controller, fake_services):
        fake_services.active = {}
        setup = make_proxy(accepting_controller)
        setup.material = MATERIAL

        with pytest.raises(SetupAborted):
            setup.phase_service()

    def test_bbr_settings_written(self, make_proxy, accepting_controller, tmp_path, monkeypatch):
        sysctl = tmp_path / "sysctl.conf"
        sysctl.write_text("#net.core.default_qdisc=fq_codel\nvm.swappiness=10\n")
        algorithms = ["cubic", "bbr"]
        monkeypatch.setattr(
            "vps_harden.orchestrator.current_congestion_control", lambda: algorithms.pop(0)
        )
        monkeypatch.setattr("vps_harden.orchestrator.sysctl_reload", lambda path: Outcome.ok())
        setup = make_proxy(accepting_controller)

        setup.phase_bbr()

        assert sysctl.read_text() == (
            "net.core.default_qdisc=fq\n"
            "vm.swappiness=10\n"
            "net.ipv4.tcp_congestion_control=bbr\n"
        )
        assert algorithms == []

    def test_bbr_reverted_when_sysctl_rejects(
        self, make_proxy, accepting_controller, tmp_path, monkeypatch
    ):
        sysctl = tmp_path / "sysctl.conf"
        sysctl.write_text("vm.swappiness=10\n")
        monkeypatch.setattr("vps_harden.orchestrator.current_congestion_control", lambda: "cubic")
        monkeypatch.setattr(
            "vps_harden.orchestrator.sysctl_reload",
            lambda path: Outcome.recoverable("Failed to apply sysctl settings"),
        )
        setup = make_proxy(accepting_controller)

        setup.phase_bbr()

        assert sysctl.read_text() == "vm.swappiness=10\n"
        assert setup.status["bbr"]["status"] == "failed"

    def test_bbr_already_enabled_leaves_file_alone(
        self, make_proxy, accepting_controller, tmp_path, monkeypatch
    ):
        monkeypatch.setattr("vps_harden.orchestrator.current_congestion_control", lambda: "bbr")
        setup = make_proxy(accepting_controller)

        setup.phase_bbr()

        assert not (tmp_path / "sysctl.conf").exists()

    def test_profile(self, make_proxy, accepting_controller, tmp_path, monkeypatch):
        saved = []
        monkeypatch.setattr("vps_harden.orchestrator.public_ip", lambda: "203.0.113.7")
        monkeypatch.setattr("vps_harden.orchestrator.hostname", lambda: "vps")
        monkeypatch.setattr(
            "vps_harden.orchestrator.render_qr_terminal",
            lambda link: Outcome.ok(data="QR"),
        )
        monkeypatch.setattr(
            "vps_harden.orchestrator.save_qr_image",
            lambda link, path: saved.append(path) or Outcome.ok(),
        )
        setup = make_proxy(accepting_controller)
        setup.material = MATERIAL

        profile = setup.phase_profile()

        assert profile.server == "203.0.113.7"
        assert profile.link.startswith(f"vless://{MATERIAL.uuid}@203.0.113.7:443?")
        assert profile.link.split("#", 1)[1].startswith(percent_encode("vps-"))
        assert saved == [tmp_path / "qrcode.png"]

    def test_full_run(
        self, make_proxy, accepting_controller, fake_services, tmp_path, monkeypatch
    ):
        for name in ("check_root", "install_xray"):
            monkeypatch.setattr(f"vps_harden.orchestrator.{name}", lambda: Outcome.ok())
        monkeypatch.setattr("vps_harden.orchestrator.missing_tools", lambda tools: [])
        monkeypatch.setattr("vps_harden.orchestrator.current_congestion_control", lambda: "bbr")
        monkeypatch.setattr("vps_harden.orchestrator.public_ip", lambda: "203.0.113.7")
        monkeypatch.setattr("vps_harden.orchestrator.hostname", lambda: "vps")
        monkeypatch.setattr(
            "vps_harden.orchestrator.render_qr_terminal",
            lambda link: Outcome.ok(data="QR"),
        )
        monkeypatch.setattr(
            "vps_harden.orchestrator.save_qr_image", lambda link, path: Outcome.ok()
        )
        fake_services.active = {"xray": True}
        generator = FakeGenerator(
            MATERIAL.uuid + "\n",
            f"Private key: {MATERIAL.private_key}\nPublic key: {MATERIAL.public_key}\n",
        )
        setup = make_proxy(accepting_controller, generator)

        assert setup.run() == 0

        assert all(data["status"] == "success" for data in setup.status.values())
        assert setup.profile.link.startswith(f"vless://{MATERIAL.uuid}@203.0.113.7:443?")
        assert (tmp_path / "xray" / "config.json").is_file()

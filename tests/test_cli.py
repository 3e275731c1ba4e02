"""Tests for the command line entry point of create_esxi_ks_usb.py."""

import argparse

import pytest

import create_esxi_ks_usb
from conftest import ScriptedConsole
from create_esxi_ks_usb import build_parameters, main
from usb_common import ConfigError
from usb_config import ROOT_PASSWORD_ENV_VAR, SecretsManager

NETWORK_ARGS = [
    "--ip", "10.20.0.4",
    "--netmask", "255.255.255.0",
    "--gateway", "10.20.0.1",
    "--hostname", "h",
    "--nameserver", "10.20.0.10",
]


@pytest.fixture(autouse=True)
def clear_password_env(monkeypatch):
    monkeypatch.delenv(ROOT_PASSWORD_ENV_VAR, raising=False)


@pytest.fixture
def config_file(tmp_path, iso_file):
    path = tmp_path / "esxi-usb.yaml"
    path.write_text(
        "network:\n"
        "  netmask: 255.255.0.0\n"
        "  gateway: 10.0.0.1\n"
        "  dns_server: 10.0.0.53\n"
        "  vlan_id: 30\n"
        "common:\n"
        f"  esxi_iso_path: '{iso_file}'\n"
        "hosts:\n"
        "  - number: 1\n"
        "    hostname: esx01.lab.local\n"
        "    ip: 10.0.1.11\n",
        encoding="utf-8",
    )
    return path


def test_print_kickstart(capsys):
    main(NETWORK_ARGS + ["--vlan-id", "20", "--root-password", "pw", "--print-kickstart"])

    out = capsys.readouterr().out
    assert out.startswith("vmaccepteula\n")
    assert "--nameserver=10.20.0.10 --vlanid=20\n" in out
    assert "rootpw pw\n" in out


def test_full_run(fake_provisioner, iso_file, capsys):
    main(
        ["-i", str(iso_file), "-d", "2", "--root-password", "pw"] + NETWORK_ARGS,
        provisioner=fake_provisioner,
        console=ScriptedConsole(["Y"]),
    )

    root = fake_provisioner.volume_root("F")
    assert (root / "KS.CFG").exists()
    assert "USB Creation Complete!" in capsys.readouterr().out


def test_prompts_for_disk_when_not_given(fake_provisioner, iso_file):
    console = ScriptedConsole(["3", "Y"])

    main(
        ["-i", str(iso_file), "--root-password", "pw"] + NETWORK_ARGS,
        provisioner=fake_provisioner,
        console=console,
    )

    assert ("wipe", 3) in fake_provisioner.calls


def test_refusal_exits_with_error(fake_provisioner, iso_file, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(
            ["-i", str(iso_file), "-d", "2", "--root-password", "pw"] + NETWORK_ARGS,
            provisioner=fake_provisioner,
            console=ScriptedConsole(["no"]),
        )

    assert excinfo.value.code == 1
    assert "Operation cancelled by user" in capsys.readouterr().out
    assert fake_provisioner.call_names() == ["list"]


def test_missing_iso_exits_after_format(fake_provisioner, tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(
            ["-i", str(tmp_path / "gone.iso"), "-d", "2", "--root-password", "pw"]
            + NETWORK_ARGS,
            provisioner=fake_provisioner,
            console=ScriptedConsole(["Y"]),
        )

    assert excinfo.value.code == 1
    assert "ESXi ISO not found" in capsys.readouterr().out
    assert "mount" not in fake_provisioner.call_names()


def test_missing_parameters_listed_together(fake_provisioner, capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--ip", "10.20.0.4"], provisioner=fake_provisioner, console=ScriptedConsole())

    assert excinfo.value.code == 1
    out = capsys.readouterr().out
    assert "--iso," in out
    assert "--netmask" in out
    assert "--gateway" in out
    assert fake_provisioner.calls == []


def test_values_from_config(fake_provisioner, config_file, monkeypatch):
    monkeypatch.setenv(ROOT_PASSWORD_ENV_VAR, "from-env")

    main(
        ["-c", str(config_file), "--host", "1", "-d", "2"],
        provisioner=fake_provisioner,
        console=ScriptedConsole(["Y"]),
    )

    ks = (fake_provisioner.volume_root("F") / "KS.CFG").read_text(encoding="utf-8")
    assert "--ip=10.0.1.11 --netmask=255.255.0.0 --gateway=10.0.0.1" in ks
    assert "--hostname=esx01.lab.local --nameserver=10.0.0.53 --vlanid=30" in ks
    assert "rootpw from-env" in ks


def test_unknown_config_host(fake_provisioner, config_file, capsys):
    with pytest.raises(SystemExit):
        main(
            ["-c", str(config_file), "--host", "9", "--root-password", "pw"],
            provisioner=fake_provisioner,
            console=ScriptedConsole(),
        )

    assert "Host 9 not found" in capsys.readouterr().out


def test_letter_strategy(fake_provisioner, iso_file):
    fake_provisioner.used_letters = ["C", "E"]

    main(
        ["-i", str(iso_file), "-d", "2", "--root-password", "pw", "--letter-strategy", "first-free"]
        + NETWORK_ARGS,
        provisioner=fake_provisioner,
        console=ScriptedConsole(["Y"]),
    )

    assert ("partition", 2, "D") in fake_provisioner.calls


def test_list(fake_provisioner, capsys):
    main(["--list"], provisioner=fake_provisioner, console=ScriptedConsole())

    out = capsys.readouterr().out
    assert "Kingston DataTraveler" in out
    assert fake_provisioner.call_names() == ["list"]


def test_log_file(fake_provisioner, iso_file, tmp_path):
    log_file = tmp_path / "usb.log"

    main(
        ["-i", str(iso_file), "-d", "2", "--root-password", "pw", "--log", str(log_file)]
        + NETWORK_ARGS,
        provisioner=fake_provisioner,
        console=ScriptedConsole(["Y"]),
    )

    content = log_file.read_text(encoding="utf-8")
    assert "Disk 2 confirmed for erase" in content
    assert "Created USB for h on F: with kickstart" in content


def test_missing_template(fake_provisioner, tmp_path, capsys):
    with pytest.raises(SystemExit):
        main(
            ["--template", str(tmp_path / "none.j2"), "--print-kickstart"],
            provisioner=fake_provisioner,
            console=ScriptedConsole(),
        )

    assert "Template file not found" in capsys.readouterr().out


def test_windows_only(monkeypatch, capsys):
    monkeypatch.setattr(create_esxi_ks_usb.sys, "platform", "linux")

    with pytest.raises(SystemExit) as excinfo:
        main(["--list"], console=ScriptedConsole())

    assert excinfo.value.code == 1
    assert "Windows only" in capsys.readouterr().out


def test_password_prompt_used_last(iso_file):
    parser = create_esxi_ks_usb.build_parser()
    args = parser.parse_args(["-i", str(iso_file)] + NETWORK_ARGS)
    console = ScriptedConsole(secret="typed-secret")

    params = build_parameters(args, {}, SecretsManager(None), console)

    assert params.root_password == "typed-secret"
    assert params.vlan_id is None
    assert params.disk_number is None


def test_cli_overrides_config(iso_file):
    args = argparse.Namespace(
        iso=iso_file,
        disk=None,
        ip=None,
        netmask="255.255.255.128",
        gateway=None,
        hostname="override",
        nameserver=None,
        vlan_id="",
        root_password="pw",
        host=1,
    )
    config = {
        "network": {"netmask": "255.0.0.0", "gateway": "10.0.0.1", "dns_server": "10.0.0.53", "vlan_id": 5},
        "common": {},
        "hosts_dict": {1: {"number": 1, "hostname": "esx01", "ip": "10.0.1.11"}},
    }

    params = build_parameters(args, config, SecretsManager(None), ScriptedConsole())

    assert params.netmask == "255.255.255.128"
    assert params.hostname == "override"
    assert params.ip == "10.0.1.11"
    # An explicit empty --vlan-id turns the config VLAN off
    assert params.vlan_id is None


def test_empty_password_rejected(iso_file):
    parser = create_esxi_ks_usb.build_parser()
    args = parser.parse_args(["-i", str(iso_file)] + NETWORK_ARGS)

    with pytest.raises(ConfigError):
        build_parameters(args, {}, SecretsManager(None), ScriptedConsole(secret=""))


def test_dry_run_touches_nothing(fake_provisioner, iso_file, capsys):
    main(
        ["-i", str(iso_file), "-d", "2", "--root-password", "pw", "--dry-run"] + NETWORK_ARGS,
        provisioner=fake_provisioner,
        console=ScriptedConsole(["Y"]),
    )

    assert set(fake_provisioner.call_names()) == {"list", "used_letters"}
    out = capsys.readouterr().out
    assert "Would format F: as FAT32" in out
    assert "DRY RUN Complete - No changes made" in out


def test_admin_check_requires_windows(monkeypatch, capsys):
    monkeypatch.setattr(create_esxi_ks_usb.sys, "platform", "linux")

    with pytest.raises(SystemExit) as excinfo:
        create_esxi_ks_usb.check_admin()

    assert excinfo.value.code == 1
    out = capsys.readouterr().out
    assert "Windows only" in out
    assert "Administrator" not in out


def test_admin_check_skipped_for_dry_run(monkeypatch):
    monkeypatch.setattr(create_esxi_ks_usb.sys, "platform", "linux")

    create_esxi_ks_usb.check_admin(dry_run=True)

"""
Pytest configuration and shared fixtures for the ESXi USB creator tests.

FakeProvisioner stands in for the Windows disk backend: it records every
call in order and maps drive letters to directories under tmp_path so the
file patching and kickstart writing run against real files.
"""

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from boot_cfg import CDROM_BOOT_OPTION
from esxi_kickstart import ProvisioningParameters
from usb_common import Console
from usb_devices import BlockDeviceProvisioner, MountedImage, RemovableDevice

BOOT_CFG_TEMPLATE = (
    "bootstate=0\n"
    "title=Loading ESXi installer\n"
    "timeout=5\n"
    "prefix=\n"
    "kernel=/b.b00\n"
    f"{CDROM_BOOT_OPTION}\n"
    "modules=/jumpstrt.gz --- /useropts.gz --- /features.gz\n"
)


class ScriptedConsole(Console):
    """Console that answers prompts from a fixed list"""

    def __init__(self, answers=None, secret: str = "prompted-secret"):
        self.answers = list(answers or [])
        self.secret = secret
        self.prompts: List[str] = []
        self.messages: List[str] = []

    def ask(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {prompt}")
        return self.answers.pop(0)

    def ask_secret(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.secret

    def say(self, message: str, color: Optional[str] = None):
        self.messages.append(message)


class FakeProvisioner(BlockDeviceProvisioner):
    """In-memory disk backend that records calls"""

    def __init__(
        self,
        root: Path,
        devices=None,
        used_letters=None,
        iso_letter: str = "E",
    ):
        self.root = root
        self.devices = list(devices or [])
        self.used_letters = list(used_letters or ["C", "D", "E"])
        self.iso_letter = iso_letter
        self.calls: List[tuple] = []
        self.volumes: Dict[str, Path] = {}

    def list_removable_devices(self):
        self.calls.append(("list",))
        return list(self.devices)

    def used_drive_letters(self):
        self.calls.append(("used_letters",))
        return list(self.used_letters)

    def wipe(self, disk_number):
        self.calls.append(("wipe", disk_number))

    def create_partition(self, disk_number, drive_letter):
        self.calls.append(("partition", disk_number, drive_letter))
        self.used_letters.append(drive_letter)

    def format_volume(self, drive_letter, filesystem, label, allocation_unit):
        self.calls.append(("format", drive_letter, filesystem, label, allocation_unit))
        self.volume_root(drive_letter).mkdir(parents=True, exist_ok=True)

    def mount_image(self, image_path, label_hint="ESXI"):
        self.calls.append(("mount", image_path, label_hint))
        return MountedImage(image_path, self.iso_letter)

    def copy_tree(self, source_letter, target_letter):
        self.calls.append(("copy", source_letter, target_letter))
        # What an ESXi ISO brings along
        target = self.volume_root(target_letter)
        (target / "EFI" / "BOOT").mkdir(parents=True, exist_ok=True)
        (target / "BOOT.CFG").write_text(BOOT_CFG_TEMPLATE, encoding="utf-8")
        (target / "EFI" / "BOOT" / "BOOT.CFG").write_text(BOOT_CFG_TEMPLATE, encoding="utf-8")

    def eject_image(self, image):
        self.calls.append(("eject", image.source_path))

    def volume_root(self, drive_letter):
        return self.volumes.setdefault(drive_letter, self.root / f"drive_{drive_letter}")

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def usb_devices() -> List[RemovableDevice]:
    return [
        RemovableDevice(number=2, label="SanDisk Ultra", capacity_bytes=16008609792),
        RemovableDevice(number=3, label="Kingston DataTraveler", capacity_bytes=32015679488),
    ]


@pytest.fixture
def fake_provisioner(tmp_path, usb_devices) -> FakeProvisioner:
    return FakeProvisioner(tmp_path / "volumes", devices=usb_devices)


@pytest.fixture
def iso_file(tmp_path) -> Path:
    iso = tmp_path / "VMware-VMvisor-Installer-8.0U3.x86_64.iso"
    iso.write_bytes(b"CD001")
    return iso


@pytest.fixture
def params(iso_file) -> ProvisioningParameters:
    return ProvisioningParameters(
        iso_path=str(iso_file),
        disk_number=2,
        ip="10.20.0.4",
        netmask="255.255.255.0",
        gateway="10.20.0.1",
        hostname="h",
        nameserver="10.20.0.10",
        root_password="VMware1!",
        vlan_id="20",
    )


@pytest.fixture(autouse=True)
def no_log_file():
    """Keep --log state from leaking between tests"""
    import usb_common

    usb_common._log_file = None
    yield
    usb_common._log_file = None

#!/usr/bin/env python3
"""
Removable disk access for the ESXi USB creator
Purpose: Enumerate USB disks, wipe/partition/format them, mount and copy ISOs

Everything destructive goes through BlockDeviceProvisioner so the workflow
never calls the OS directly. WindowsDiskProvisioner drives the Storage
cmdlets through PowerShell, DryRunProvisioner only describes what would run.
"""

import json
import string
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from usb_common import (
    Colors,
    CommandFailed,
    DriveLetterUnavailable,
    ImageVolumeNotFound,
    log,
    print_message,
)

BOOT_VOLUME_LABEL = "ESXI-BOOT"
BOOT_FILESYSTEM = "FAT32"
# Most bootloaders only accept FAT clusters in a narrow size range
ALLOCATION_UNIT_SIZE = 8192
ISO_LABEL_HINT = "ESXI"


@dataclass(frozen=True)
class RemovableDevice:
    """A USB-attached disk as reported by the OS"""

    number: int
    label: str
    capacity_bytes: int

    @property
    def size_display(self) -> str:
        return format_size(self.capacity_bytes)


@dataclass(frozen=True)
class MountedImage:
    source_path: str
    drive_letter: str


@dataclass(frozen=True)
class TargetVolume:
    drive_letter: str
    filesystem: str = BOOT_FILESYSTEM
    label: str = BOOT_VOLUME_LABEL


def format_size(size_bytes: int) -> str:
    """Human readable size, e.g. 14.9 GB"""
    if size_bytes < 1024:
        return f"{size_bytes} B"

    size = float(size_bytes)
    for unit in ["KB", "MB", "GB"]:
        size /= 1024
        if size < 1024 or unit == "GB":
            break
    return f"{size:.1f} {unit}"


def normalize_letters(letters: Iterable[str]) -> List[str]:
    """Turn 'C:', 'd' or 'E:\\' into sorted unique upper-case letters"""
    result = set()
    for letter in letters:
        letter = (letter or "").strip()
        if letter and letter[0].upper() in string.ascii_uppercase:
            result.add(letter[0].upper())
    return sorted(result)


# pylint: disable=too-few-public-methods
class NextLetterAllocator:
    """
    Pick the letter right after the highest one in use.

    Gaps in the existing letters are not considered, so a letter freed below
    the maximum is never reused. There is nothing after Z.
    """

    name = "next"

    def allocate(self, used_letters: Iterable[str]) -> str:
        letters = normalize_letters(used_letters)
        if not letters:
            raise DriveLetterUnavailable("No assigned drive letters found to continue from")

        last = letters[-1]
        if last == "Z":
            raise DriveLetterUnavailable("Drive letter Z is already assigned, no letter follows it")
        return chr(ord(last) + 1)


# pylint: disable=too-few-public-methods
class FirstFreeLetterAllocator:
    """Pick the first unused letter from C upward"""

    name = "first-free"

    def allocate(self, used_letters: Iterable[str]) -> str:
        used = set(normalize_letters(used_letters))
        for letter in string.ascii_uppercase[2:]:
            if letter not in used:
                return letter
        raise DriveLetterUnavailable("All drive letters C-Z are in use")


ALLOCATORS = {
    NextLetterAllocator.name: NextLetterAllocator,
    FirstFreeLetterAllocator.name: FirstFreeLetterAllocator,
}


def get_allocator(name: str):
    """Return an allocator instance by its --letter-strategy name"""
    try:
        return ALLOCATORS[name]()
    except KeyError:
        raise ValueError(f"Unknown drive letter strategy: {name}") from None


class BlockDeviceProvisioner:
    """Operations the workflow needs from the host OS"""

    def list_removable_devices(self) -> List[RemovableDevice]:
        raise NotImplementedError

    def used_drive_letters(self) -> List[str]:
        raise NotImplementedError

    def wipe(self, disk_number: int):
        raise NotImplementedError

    def create_partition(self, disk_number: int, drive_letter: str):
        raise NotImplementedError

    def format_volume(
        self, drive_letter: str, filesystem: str, label: str, allocation_unit: int
    ):
        raise NotImplementedError

    def mount_image(self, image_path: str, label_hint: str = ISO_LABEL_HINT) -> MountedImage:
        raise NotImplementedError

    def copy_tree(self, source_letter: str, target_letter: str):
        raise NotImplementedError

    def eject_image(self, image: MountedImage):
        raise NotImplementedError

    def volume_root(self, drive_letter: str) -> Path:
        return Path(f"{drive_letter}:\\")


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string"""
    return "'" + str(value).replace("'", "''") + "'"


def parse_powershell_json(output: str) -> List[Dict[str, Any]]:
    """
    Parse ConvertTo-Json output into a list of records.

    PowerShell emits nothing for an empty pipeline and a bare object
    (not a one-element array) when the pipeline holds a single item.
    """
    output = (output or "").strip()
    if not output:
        return []

    data = json.loads(output)
    if isinstance(data, dict):
        return [data]
    return list(data)


class WindowsDiskProvisioner(BlockDeviceProvisioner):
    """Disk operations through the Windows Storage PowerShell module"""

    def __init__(self, powershell: str = "powershell.exe"):
        self.powershell = powershell

    def run_powershell(self, script: str) -> str:
        """Run a PowerShell snippet, raise CommandFailed on any error"""
        cmd = [
            self.powershell,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            f"$ErrorActionPreference = 'Stop'; {script}",
        ]
        log(f"PowerShell: {script}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            raise CommandFailed(cmd, 127, f"{self.powershell} not found") from None

        if result.returncode != 0:
            raise CommandFailed(cmd, result.returncode, result.stderr)
        return result.stdout

    def list_removable_devices(self) -> List[RemovableDevice]:
        output = self.run_powershell(
            "Get-Disk | Where-Object BusType -eq 'USB' | "
            "Select-Object Number, FriendlyName, Size | ConvertTo-Json -Compress"
        )
        devices = [
            RemovableDevice(
                number=int(record["Number"]),
                label=(record.get("FriendlyName") or "").strip(),
                capacity_bytes=int(record.get("Size") or 0),
            )
            for record in parse_powershell_json(output)
        ]
        return sorted(devices, key=lambda d: d.number)

    def used_drive_letters(self) -> List[str]:
        output = self.run_powershell(
            "Get-CimInstance Win32_LogicalDisk -Filter 'DriveType=3' | "
            "Select-Object -ExpandProperty DeviceID"
        )
        return normalize_letters(output.splitlines())

    def wipe(self, disk_number: int):
        self.run_powershell(
            f"$disk = Get-Disk -Number {int(disk_number)}; "
            "if ($disk.PartitionStyle -ne 'RAW') { "
            f"Clear-Disk -Number {int(disk_number)} -RemoveData -RemoveOEM -Confirm:$false }}; "
            f"Initialize-Disk -Number {int(disk_number)} -PartitionStyle MBR"
        )

    def create_partition(self, disk_number: int, drive_letter: str):
        self.run_powershell(
            f"New-Partition -DiskNumber {int(disk_number)} -UseMaximumSize "
            f"-MbrType FAT32 -IsActive -DriveLetter {drive_letter} | Out-Null"
        )

    def format_volume(
        self, drive_letter: str, filesystem: str, label: str, allocation_unit: int
    ):
        self.run_powershell(
            f"Format-Volume -DriveLetter {drive_letter} -FileSystem {filesystem} "
            f"-NewFileSystemLabel {ps_quote(label)} "
            f"-AllocationUnitSize {int(allocation_unit)} -Force -Confirm:$false | Out-Null"
        )

    def mount_image(self, image_path: str, label_hint: str = ISO_LABEL_HINT) -> MountedImage:
        self.run_powershell(
            f"Mount-DiskImage -ImagePath {ps_quote(image_path)} -StorageType ISO | Out-Null"
        )
        # Only the volumes of this image, never the freshly formatted ESXI-BOOT stick
        output = self.run_powershell(
            f"Get-DiskImage -ImagePath {ps_quote(image_path)} | Get-Volume | "
            "Where-Object { $_.DriveLetter } | "
            "Select-Object DriveLetter, FileSystemLabel, "
            "@{Name='DriveType'; Expression={[string]$_.DriveType}} | "
            "ConvertTo-Json -Compress"
        )

        for volume in parse_powershell_json(output):
            label = volume.get("FileSystemLabel") or ""
            if volume.get("DriveType") != "CD-ROM":
                continue
            if label_hint.upper() in label.upper():
                image = MountedImage(image_path, str(volume["DriveLetter"]))
                log(f"ISO {image_path} mounted as {image.drive_letter}: ({label})")
                return image

        # Nothing to copy from, don't leave the image attached
        self.run_powershell(f"Dismount-DiskImage -ImagePath {ps_quote(image_path)} | Out-Null")
        raise ImageVolumeNotFound(
            f"No mounted volume with a label containing '{label_hint}' after mounting {image_path}"
        )

    def copy_tree(self, source_letter: str, target_letter: str):
        cmd = [
            "robocopy",
            f"{source_letter}:\\",
            f"{target_letter}:\\",
            "/E",
            "/R:1",
            "/W:1",
            "/NP",
        ]
        log(f"Running: {' '.join(cmd)}")
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        # robocopy: 0-7 mean success with varying detail, 8+ is a failure
        if result.returncode >= 8:
            raise CommandFailed(cmd, result.returncode, result.stderr or result.stdout)

    def eject_image(self, image: MountedImage):
        self.run_powershell(
            f"Dismount-DiskImage -ImagePath {ps_quote(image.source_path)} | Out-Null"
        )


class DryRunProvisioner(BlockDeviceProvisioner):
    """Reads from the real provisioner, only prints the destructive calls"""

    def __init__(self, real: BlockDeviceProvisioner):
        self.real = real

    @staticmethod
    def _would(message: str):
        print(f"{Colors.BLUE}[DRY RUN]{Colors.NC} Would {message}")
        log(f"[DRY RUN] Would {message}")

    def list_removable_devices(self) -> List[RemovableDevice]:
        return self.real.list_removable_devices()

    def used_drive_letters(self) -> List[str]:
        return self.real.used_drive_letters()

    def wipe(self, disk_number: int):
        self._would(f"wipe all partitions on disk {disk_number}")

    def create_partition(self, disk_number: int, drive_letter: str):
        self._would(f"create one full-size partition on disk {disk_number} as {drive_letter}:")

    def format_volume(
        self, drive_letter: str, filesystem: str, label: str, allocation_unit: int
    ):
        self._would(
            f"format {drive_letter}: as {filesystem} (label {label}, "
            f"{allocation_unit} byte clusters)"
        )

    def mount_image(self, image_path: str, label_hint: str = ISO_LABEL_HINT) -> MountedImage:
        self._would(f"mount {image_path} and find the volume labelled *{label_hint}*")
        return MountedImage(image_path, "?")

    def copy_tree(self, source_letter: str, target_letter: str):
        self._would(f"copy everything from {source_letter}:\\ to {target_letter}:\\")

    def eject_image(self, image: MountedImage):
        self._would(f"eject {image.source_path}")


def print_device_table(devices: List[RemovableDevice]):
    """Print removable devices in the same table style as the macOS tooling"""
    print()
    print_message(Colors.YELLOW, "Removable (USB) disks:")
    print()

    if not devices:
        print_message(Colors.YELLOW, "No removable USB disks found")
        print()
        return

    print(f"{'DISK':<8} {'NAME':<32} {'SIZE':<12}")
    print(f"{'----':<8} {'----':<32} {'----':<12}")
    for device in devices:
        name = device.label
        # Truncate long names
        if len(name) > 32:
            name = name[:29] + "..."
        print(
            f"{Colors.GREEN}{device.number:<8} {name:<32} {device.size_display:<12}{Colors.NC}"
        )
        log(f"Disk {device.number}: {device.label} ({device.capacity_bytes} bytes)")
    print()


def find_device(devices: Iterable[RemovableDevice], number: int) -> Optional[RemovableDevice]:
    for device in devices:
        if device.number == number:
            return device
    return None

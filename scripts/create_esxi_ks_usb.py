#!/usr/bin/env python3
"""
ESXi Kickstart USB Creation Script
Purpose: Turn a USB stick into a self-installing ESXi installer on Windows

Steps: pick the USB disk, confirm, wipe and format it FAT32 (ESXI-BOOT),
copy the ESXi ISO onto it, point BOOT.CFG at KS.CFG and render KS.CFG.
"""

import argparse
import ctypes
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from boot_cfg import KICKSTART_FILE_NAME, boot_config_paths, patch_boot_config
from esxi_kickstart import KickstartRenderer, ProvisioningParameters
from usb_common import (
    Colors,
    ConfigError,
    Console,
    DeviceNotFound,
    MissingSource,
    UserAborted,
    get_log_file,
    log,
    print_banner,
    print_message,
    set_log_file,
)
from usb_config import SecretsManager, load_config, secrets_file_for
from usb_devices import (
    ALLOCATION_UNIT_SIZE,
    ALLOCATORS,
    BOOT_FILESYSTEM,
    BOOT_VOLUME_LABEL,
    ISO_LABEL_HINT,
    BlockDeviceProvisioner,
    DryRunProvisioner,
    NextLetterAllocator,
    RemovableDevice,
    TargetVolume,
    WindowsDiskProvisioner,
    find_device,
    get_allocator,
    print_device_table,
)

CONFIRM_TOKEN = "Y"


def check_windows():
    """Check if running on Windows"""
    if sys.platform != "win32":
        print_message(Colors.RED, "ERROR: This script is for Windows only")
        print(f"Current platform: {sys.platform}")
        sys.exit(1)


def check_admin(dry_run: bool = False):
    """Check if script is running elevated"""
    if dry_run:
        return  # Skip admin check in dry-run mode

    # ctypes.windll only exists on Windows
    check_windows()
    try:
        is_admin = bool(ctypes.windll.shell32.IsUserAnAdmin())
    except (AttributeError, OSError):
        is_admin = False

    if not is_admin:
        print_message(Colors.RED, "ERROR: This script must be run as Administrator")
        print("Open PowerShell with 'Run as administrator' and try again")
        sys.exit(1)


class DeviceSelector:
    """Resolve the target disk and make the operator confirm the wipe"""

    def __init__(self, provisioner: BlockDeviceProvisioner, console: Console):
        self.provisioner = provisioner
        self.console = console

    def prompt_disk_number(self) -> int:
        while True:
            answer = self.console.ask("Enter disk number to use: ").strip()
            if answer.isdigit():
                return int(answer)
            self.console.say("ERROR: Invalid disk number", Colors.RED)

    def select(self, disk_number: Optional[int] = None) -> RemovableDevice:
        devices = self.provisioner.list_removable_devices()
        print_device_table(devices)

        if disk_number is None:
            disk_number = self.prompt_disk_number()

        device = find_device(devices, disk_number)
        if not device:
            raise DeviceNotFound(f"Disk {disk_number} is not an attached removable USB disk")

        self.confirm(device)
        return device

    def confirm(self, device: RemovableDevice):
        self.console.say("========================================", Colors.RED)
        self.console.say(
            f"WARNING: ALL DATA ON DISK {device.number} WILL BE ERASED!", Colors.RED
        )
        self.console.say("========================================", Colors.RED)
        self.console.say(f"  Disk:     {device.number}")
        self.console.say(f"  Name:     {device.label}")
        self.console.say(f"  Size:     {device.size_display}")

        answer = self.console.ask(f"Continue? ({CONFIRM_TOKEN}/N): ")
        if answer != CONFIRM_TOKEN:
            raise UserAborted("Operation cancelled by user")
        log(f"Disk {device.number} confirmed for erase")


class ProvisioningWorkflow:
    """Runs select -> format -> copy -> patch -> kickstart, strictly in order"""

    def __init__(
        self,
        provisioner: BlockDeviceProvisioner,
        console: Console,
        allocator=None,
        renderer: Optional[KickstartRenderer] = None,
        dry_run: bool = False,
    ):
        self.provisioner = provisioner
        self.console = console
        self.allocator = allocator or NextLetterAllocator()
        self.renderer = renderer or KickstartRenderer()
        self.dry_run = dry_run
        self.selector = DeviceSelector(provisioner, console)

    def run(self, params: ProvisioningParameters) -> TargetVolume:
        device = self.selector.select(params.disk_number)

        print_message(Colors.YELLOW, f"Step 1/4: Formatting disk {device.number}...")
        volume = self.prepare_disk(device.number)
        print_message(
            Colors.GREEN,
            f"✓ Disk {device.number} formatted as {volume.filesystem} "
            f"({volume.label}) on {volume.drive_letter}:",
        )

        print_message(
            Colors.YELLOW,
            "Step 2/4: Copying ISO contents to USB (this may take 5-10 minutes)...",
        )
        start_time = time.time()
        self.install_payload(params.iso_path, volume)
        duration = int(time.time() - start_time)
        print_message(Colors.GREEN, f"✓ ISO contents copied (took {duration}s)")

        print_message(Colors.YELLOW, "Step 3/4: Modifying BOOT.CFG for kickstart...")
        self.patch_boot_configs(volume)

        print_message(Colors.YELLOW, f"Step 4/4: Writing {KICKSTART_FILE_NAME}...")
        self.write_kickstart(params, volume)

        return volume

    def prepare_disk(self, disk_number: int) -> TargetVolume:
        """Wipe the disk and create one FAT32 partition spanning all of it"""
        self.provisioner.wipe(disk_number)

        letter = self.allocator.allocate(self.provisioner.used_drive_letters())
        log(f"Allocated drive letter {letter}: for disk {disk_number}")

        self.provisioner.create_partition(disk_number, letter)
        self.provisioner.format_volume(
            letter, BOOT_FILESYSTEM, BOOT_VOLUME_LABEL, ALLOCATION_UNIT_SIZE
        )
        return TargetVolume(letter)

    def install_payload(self, iso_path: str, volume: TargetVolume):
        """Copy the whole ISO tree onto the new volume"""
        # Checked only now, after the disk has already been formatted
        if not Path(iso_path).is_file():
            raise MissingSource(f"ESXi ISO not found at: {iso_path}")

        image = self.provisioner.mount_image(iso_path, ISO_LABEL_HINT)
        print_message(Colors.GREEN, f"✓ ISO mounted at: {image.drive_letter}:")
        self.provisioner.copy_tree(image.drive_letter, volume.drive_letter)
        self.provisioner.eject_image(image)
        log(f"ISO {iso_path} ejected")

    def patch_boot_configs(self, volume: TargetVolume):
        root = self.provisioner.volume_root(volume.drive_letter)
        for path in boot_config_paths(root):
            if self.dry_run:
                print(f"{Colors.BLUE}[DRY RUN]{Colors.NC} Would patch kernelopt in {path}")
                continue

            changed = patch_boot_config(path)
            log(f"Patched {path} (changed: {changed})")
            print_message(Colors.GREEN, f"✓ Modified {path}")

    def write_kickstart(self, params: ProvisioningParameters, volume: TargetVolume):
        root = self.provisioner.volume_root(volume.drive_letter)
        if self.dry_run:
            print(
                f"{Colors.BLUE}[DRY RUN]{Colors.NC} Would write "
                f"{root / KICKSTART_FILE_NAME}:"
            )
            print(self.renderer.render(params))
            return

        output_file = self.renderer.write(params, root)
        print_message(Colors.GREEN, f"✓ Created: {output_file}")


def build_parameters(
    args: argparse.Namespace,
    config: Dict[str, Any],
    secrets: SecretsManager,
    console: Console,
    require_iso: bool = True,
) -> ProvisioningParameters:
    """Merge CLI flags over the config file, report every missing value at once"""
    network = config.get("network", {})
    common = config.get("common", {})

    host: Dict[str, Any] = {}
    if args.host is not None:
        hosts_dict = config.get("hosts_dict", {})
        if args.host not in hosts_dict:
            raise ConfigError(f"Host {args.host} not found in config file")
        host = hosts_dict[args.host]

    vlan_id = args.vlan_id if args.vlan_id is not None else network.get("vlan_id")
    values = {
        "iso_path": str(args.iso) if args.iso else common.get("esxi_iso_path"),
        "ip": args.ip or host.get("ip"),
        "netmask": args.netmask or network.get("netmask"),
        "gateway": args.gateway or network.get("gateway"),
        "hostname": args.hostname or host.get("hostname"),
        "nameserver": args.nameserver or network.get("dns_server"),
    }

    required = ["ip", "netmask", "gateway", "hostname", "nameserver"]
    if require_iso:
        required.insert(0, "iso_path")
    missing = [key for key in required if not values[key]]
    if missing:
        raise ConfigError(
            "Missing required parameters: "
            + ", ".join("--iso" if key == "iso_path" else f"--{key}" for key in missing)
        )

    root_password = args.root_password or secrets.get_esxi_root_password(
        common.get("root_password"), prompt=console.ask_secret
    )
    if not root_password:
        raise ConfigError("ESXi root password is required")

    return ProvisioningParameters(
        iso_path=str(values["iso_path"] or ""),
        disk_number=args.disk,
        ip=str(values["ip"]),
        netmask=str(values["netmask"]),
        gateway=str(values["gateway"]),
        hostname=str(values["hostname"]),
        nameserver=str(values["nameserver"]),
        root_password=str(root_password),
        vlan_id=str(vlan_id) if vlan_id is not None and str(vlan_id) != "" else None,
    )


def print_summary(params: ProvisioningParameters, volume: TargetVolume, dry_run: bool):
    """Print completion summary with next steps"""
    print()
    if dry_run:
        print_banner("DRY RUN Complete - No changes made", Colors.YELLOW)
    else:
        print_banner("USB Creation Complete!")
    print()

    print(f"USB Volume:    {volume.drive_letter}: ({volume.label})")
    print(f"ESXi Host:     {params.hostname}")
    print(f"Host IP:       {params.ip}")
    if params.vlan_id:
        print(f"VLAN:          {params.vlan_id}")
    print(f"Kickstart:     {KICKSTART_FILE_NAME} ✓")
    log(f"Created USB for {params.hostname} on {volume.drive_letter}: with kickstart")

    print()
    print_message(Colors.YELLOW, "Next Steps:")
    print("1. Safely eject the USB drive")
    print(f"2. Insert it into the host that will become {params.hostname}")
    print("3. Boot the host from USB")
    print("4. Installation will proceed automatically (kickstart enabled)")
    print(f"5. After the final reboot, the host will be at https://{params.ip}")
    print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create a self-installing ESXi kickstart USB drive (Windows)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --list                                  # List USB disks
  %(prog)s -i VMware-ESXi.iso --ip 10.20.0.4 --netmask 255.255.255.0 \\
      --gateway 10.20.0.1 --hostname esx01 --nameserver 10.20.0.10 --vlan-id 20
  %(prog)s -c config/esxi-usb.yaml --host 1 -d 2   # Values from config, disk 2
  %(prog)s -c config/esxi-usb.yaml --host 1 --dry-run
  %(prog)s -c config/esxi-usb.yaml --host 1 --print-kickstart

Root password sources (first match wins):
  --root-password, ESXI_ROOT_PASSWORD env var, esxi-secrets.yaml next to the
  config file, common.root_password in the config, interactive prompt
        """,
    )

    parser.add_argument("-i", "--iso", type=Path, help="Path to ESXi ISO file")
    parser.add_argument(
        "-d", "--disk", type=int, help="USB disk number (prompted if not given)"
    )
    parser.add_argument("--ip", help="Host IP address")
    parser.add_argument("--netmask", help="Network mask")
    parser.add_argument("--gateway", help="Default gateway")
    parser.add_argument("--hostname", help="Host name (FQDN)")
    parser.add_argument("--nameserver", help="DNS server")
    parser.add_argument("--vlan-id", help="Management VLAN id (optional)")
    parser.add_argument("--root-password", help="ESXi root password")
    parser.add_argument(
        "--host", type=int, help="Take IP and hostname from this config host number"
    )
    parser.add_argument(
        "-c", "--config", type=Path, help="Path to YAML config file (optional)"
    )
    parser.add_argument(
        "--letter-strategy",
        choices=sorted(ALLOCATORS),
        default=NextLetterAllocator.name,
        help="How to pick the drive letter for the new partition (default: next)",
    )
    parser.add_argument(
        "--template", type=Path, help="Custom Jinja2 kickstart template"
    )
    parser.add_argument(
        "--list", action="store_true", help="List removable USB disks and exit"
    )
    parser.add_argument(
        "--print-kickstart",
        action="store_true",
        help="Render KS.CFG to stdout without touching any disk",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making any changes",
    )
    parser.add_argument("--log", type=str, help="Write detailed log to file")

    return parser


def main(
    argv=None,
    provisioner: Optional[BlockDeviceProvisioner] = None,
    console: Optional[Console] = None,
):
    parser = build_parser()
    args = parser.parse_args(argv)

    set_log_file(args.log)
    console = console or Console()

    try:
        config = load_config(args.config) if args.config else {}
        secrets = SecretsManager(secrets_file_for(args.config))

        if args.template and not args.template.is_file():
            raise ConfigError(f"Template file not found: {args.template}")
        renderer = KickstartRenderer(args.template)

        if args.print_kickstart:
            params = build_parameters(args, config, secrets, console, require_iso=False)
            print(renderer.render(params), end="")
            return

        # Platform checks only apply to the real Windows backend
        if provisioner is None:
            check_windows()
            if not args.list:
                check_admin(args.dry_run)
            provisioner = WindowsDiskProvisioner()

        if args.list:
            print_message(Colors.GREEN, "Available USB Disks:")
            print_device_table(provisioner.list_removable_devices())
            return

        params = build_parameters(args, config, secrets, console)

        if args.dry_run:
            provisioner = DryRunProvisioner(provisioner)
            print_banner("DRY RUN MODE - No changes will be made", Colors.YELLOW)
            print()

        print_banner("ESXi Kickstart USB Creation Script")
        print(f"ISO: {Path(params.iso_path).name}")

        workflow = ProvisioningWorkflow(
            provisioner,
            console,
            allocator=get_allocator(args.letter_strategy),
            renderer=renderer,
            dry_run=args.dry_run,
        )
        volume = workflow.run(params)
        print_summary(params, volume, args.dry_run)

        if get_log_file():
            print_message(Colors.BLUE, f"Log saved to: {get_log_file()}")
    except KeyboardInterrupt:
        print()
        print_message(Colors.YELLOW, "Operation cancelled by user")
        sys.exit(1)
    except UserAborted as e:
        print_message(Colors.RED, str(e))
        sys.exit(1)
    except Exception as e:  # pylint: disable=broad-except
        print_message(Colors.RED, f"ERROR: {e}")
        if get_log_file():
            print_message(Colors.BLUE, f"Check log for details: {get_log_file()}")
        sys.exit(1)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
ESXi BOOT.CFG patching
Purpose: Switch the installer boot options from interactive CD boot to kickstart
"""

from pathlib import Path
from typing import List

CDROM_BOOT_OPTION = "kernelopt=runweasel cdromBoot"
KICKSTART_BOOT_OPTION = "kernelopt=ks=usb:/KS.CFG"
KICKSTART_FILE_NAME = "KS.CFG"


def boot_config_paths(volume_root: Path) -> List[Path]:
    """BIOS and UEFI boot configs, in the order they are patched"""
    return [
        volume_root / "BOOT.CFG",
        volume_root / "EFI" / "BOOT" / "BOOT.CFG",
    ]


def patch_boot_config(path: Path) -> bool:
    """
    Replace the CD boot kernelopt with the kickstart one and rewrite the file.

    The file is always rewritten, even when the option was already patched.
    Returns True if the content changed.
    """
    # newline="" keeps the ISO's CRLF/LF line endings as they are
    with open(path, "r", encoding="utf-8", newline="") as f:
        content = f.read()

    patched = content.replace(CDROM_BOOT_OPTION, KICKSTART_BOOT_OPTION)

    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(patched)

    return patched != content

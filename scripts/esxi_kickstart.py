#!/usr/bin/env python3
"""
ESXi Kickstart Rendering
Purpose: Render KS.CFG for an unattended install from the USB boot media
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import DictLoader, Environment, FileSystemLoader

from boot_cfg import KICKSTART_FILE_NAME

DEFAULT_TEMPLATE_NAME = "ks-usb.cfg.j2"

# Installs back onto the USB stick itself, local disks are left alone
DEFAULT_TEMPLATE = """\
vmaccepteula
install --firstdisk=usb --overwritevmfs --novmfsondisk
reboot

network --bootproto=static --ip={{ ip }} --netmask={{ netmask }} --gateway={{ gateway }} --hostname={{ hostname }} --nameserver={{ nameserver }}{{ " --vlanid=" ~ vlan_id if vlan_id }}

rootpw {{ root_password }}

%firstboot --interpreter=busybox
vim-cmd hostsvc/enable_ssh
vim-cmd hostsvc/start_ssh
vim-cmd hostsvc/enable_esx_shell
vim-cmd hostsvc/start_esx_shell
esxcli system settings advanced set -o /UserVars/SuppressShellWarning -i 1
"""


@dataclass(frozen=True)
class ProvisioningParameters:
    """Everything one run needs, values are passed through unchecked"""

    iso_path: str
    disk_number: Optional[int]
    ip: str
    netmask: str
    gateway: str
    hostname: str
    nameserver: str
    root_password: str
    vlan_id: Optional[str] = None


class KickstartRenderer:
    """Render the kickstart from the built-in or a user supplied Jinja2 template"""

    def __init__(self, template_file: Optional[Path] = None):
        if template_file:
            loader = FileSystemLoader(str(template_file.parent))
            self.template_name = template_file.name
        else:
            loader = DictLoader({DEFAULT_TEMPLATE_NAME: DEFAULT_TEMPLATE})
            self.template_name = DEFAULT_TEMPLATE_NAME

        self.env = Environment(
            loader=loader,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    @staticmethod
    def get_template_vars(params: ProvisioningParameters) -> Dict[str, Any]:
        vlan_id = params.vlan_id
        if vlan_id is not None:
            vlan_id = str(vlan_id).strip()

        return {
            "ip": params.ip,
            "netmask": params.netmask,
            "gateway": params.gateway,
            "hostname": params.hostname,
            "nameserver": params.nameserver,
            "vlan_id": vlan_id or None,
            "root_password": params.root_password,
        }

    def render(self, params: ProvisioningParameters) -> str:
        template = self.env.get_template(self.template_name)
        return template.render(**self.get_template_vars(params))

    def write(self, params: ProvisioningParameters, volume_root: Path) -> Path:
        """Render and write KS.CFG to the volume root"""
        output_file = volume_root / KICKSTART_FILE_NAME
        output_file.write_text(self.render(params), encoding="utf-8")
        return output_file

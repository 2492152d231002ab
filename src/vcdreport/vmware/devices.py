"""Per-VM lookups: CD drive state, primary datastore and folder path."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from pyVmomi import vim

from vcdreport.utils.logging import get_logger

logger = get_logger(__name__)

# Root folders vCenter creates implicitly; never part of a folder path
ROOT_FOLDER_NAMES = ("vm", "Datacenters")

_DATASTORE_PREFIX = re.compile(r"^\[(?P<datastore>[^\]]+)\]")


@dataclass
class CDDriveState:
    """Backing of a VM's CD/DVD drive."""
    label: str = ""
    iso_path: str = ""        # e.g. "[datastore1] isos/ubuntu.iso"
    host_device: str = ""     # host CD drive, e.g. "/vmfs/devices/cdrom/mpx.vmhba0:C0:T0:L0"
    remote_device: str = ""   # client device of the remote console


def get_cd_drive(vm) -> Optional[CDDriveState]:
    """Return the state of the VM's first CD drive, or None if it has none.

    Lookup errors (e.g. an inaccessible VM with no config) propagate to the
    caller.
    """
    config = vm.config
    if config is None:
        raise RuntimeError(f"No configuration available for VM '{vm.name}'")

    drives = [d for d in config.hardware.device if isinstance(d, vim.vm.device.VirtualCdrom)]
    if not drives:
        return None
    if len(drives) > 1:
        logger.debug(f"{vm.name}: {len(drives)} CD drives, reporting '{_label(drives[0])}'")

    drive = drives[0]
    state = CDDriveState(label=_label(drive))
    backing = drive.backing

    if isinstance(backing, vim.vm.device.VirtualCdrom.IsoBackingInfo):
        state.iso_path = backing.fileName or ""
    elif isinstance(backing, (vim.vm.device.VirtualCdrom.RemoteAtapiBackingInfo,
                              vim.vm.device.VirtualCdrom.RemotePassthroughBackingInfo)):
        state.remote_device = backing.deviceName or ""
    elif isinstance(backing, (vim.vm.device.VirtualCdrom.AtapiBackingInfo,
                              vim.vm.device.VirtualCdrom.PassthroughBackingInfo)):
        state.host_device = backing.deviceName or ""

    return state


def _label(device) -> str:
    if device.deviceInfo and device.deviceInfo.label:
        return device.deviceInfo.label
    return f"cdrom-{device.key}"


def get_datastore_name(vm) -> str:
    """Name of the datastore holding the VM's configuration file.

    Falls back to the first datastore the VM uses when the .vmx path
    is unavailable; empty when the VM has no datastore at all.
    """
    config = vm.config
    vmx_path = config.files.vmPathName if config and config.files else None
    if vmx_path:
        match = _DATASTORE_PREFIX.match(vmx_path)
        if match:
            return match.group("datastore")

    datastores = vm.datastore
    if datastores:
        return datastores[0].name
    return ""


def compute_folder_path(vm) -> str:
    """Reconstruct the VM folder path below its datacenter.

    Walks parent references from the VM up to the datacenter, skipping the
    implicit root folders, and returns the names root to leaf joined with
    "/". A VM that lives in a vApp continues through the vApp (its name
    included) to the vApp's folder.
    """
    path_parts: list[str] = []
    parent = vm.parent or getattr(vm, "parentVApp", None)
    while parent is not None:
        if isinstance(parent, vim.Datacenter):
            break
        if isinstance(parent, vim.VirtualApp):
            path_parts.insert(0, parent.name)
            parent = parent.parentFolder or parent.parentVApp
            continue
        if isinstance(parent, vim.Folder) and parent.name not in ROOT_FOLDER_NAMES:
            path_parts.insert(0, parent.name)
        parent = parent.parent
    return "/".join(path_parts)

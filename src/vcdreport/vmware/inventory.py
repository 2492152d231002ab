"""VM listing: resolve a FilterSpec to VM handles on one vCenter.

Collects VMs with ContainerViews rooted at the requested locations and
narrows them by datastore, virtual switch, tag and name. The result keeps
container view order and lists each VM once.
"""

from __future__ import annotations

from typing import Iterable

from pyVmomi import vim

from vcdreport.filters import FilterSpec, SelectionMode
from vcdreport.utils.logging import get_logger
from vcdreport.vmware.client import StandardSwitch, VSphereClient, name_matches
from vcdreport.vmware.tagging import managed_object_id

logger = get_logger(__name__)

VM_ID_PREFIX = "VirtualMachine-"


def normalize_vm_id(vm_id: str) -> str:
    """Accept "vm-42" as well as the "VirtualMachine-vm-42" form."""
    vm_id = vm_id.strip()
    if vm_id.startswith(VM_ID_PREFIX):
        return vm_id[len(VM_ID_PREFIX):]
    return vm_id


def _unique(vms: Iterable) -> list:
    seen: set[str] = set()
    result = []
    for vm in vms:
        moid = managed_object_id(vm)
        if moid not in seen:
            seen.add(moid)
            result.append(vm)
    return result


class VMInventory:
    """Resolve VM selectors against a connected vCenter.

    Usage:
        client = VSphereClient()
        client.connect(...)
        vms = VMInventory(client).list_vms(FilterSpec(names=["web-*"]))
    """

    def __init__(self, client: VSphereClient):
        self.client = client

    def list_vms(self, spec: FilterSpec) -> list:
        """List the VMs selected by a filter specification.

        Raises:
            Whatever the vSphere API raises; a failed listing is fatal
        """
        mode = spec.mode
        if mode is SelectionMode.BY_ID:
            vms = self._by_id(spec.ids)
        elif mode is SelectionMode.RELATED_OBJECT:
            vms = self._related(spec.related_objects)
        else:
            vms = self._default(spec)
        logger.info(f"{self.client.host}: {len(vms)} VM(s) selected ({mode.value})")
        return vms

    # ── Selection modes ──────────────────────────────────────────

    def _by_id(self, ids: Iterable[str]) -> list:
        by_moid = {managed_object_id(vm): vm for vm in self.client.list_objects([vim.VirtualMachine])}
        vms = []
        for vm_id in ids:
            vm = by_moid.get(normalize_vm_id(vm_id))
            if vm is None:
                logger.warning(f"VM with id '{vm_id}' not found on {self.client.host}")
                continue
            vms.append(vm)
        return _unique(vms)

    def _related(self, objects: Iterable) -> list:
        vms = []
        for obj in objects:
            vms.extend(self.vms_of(obj))
        return _unique(vms)

    def _default(self, spec: FilterSpec) -> list:
        if spec.locations:
            candidates = []
            for location in spec.locations:
                candidates.extend(self._vms_in_location(location, recursive=not spec.no_recursion))
        else:
            # no_recursion only applies below an explicit location
            candidates = self.client.list_objects([vim.VirtualMachine])
        vms = _unique(candidates)

        if spec.datastores:
            allowed = self._moids(vm for ds in spec.datastores for vm in ds.vm)
            vms = [vm for vm in vms if managed_object_id(vm) in allowed]
        if spec.virtual_switches:
            allowed = self._moids(vm for sw in spec.virtual_switches for vm in self._switch_vms(sw))
            vms = [vm for vm in vms if managed_object_id(vm) in allowed]
        if spec.tags:
            allowed = self._tagged_vm_ids(spec.tags)
            vms = [vm for vm in vms if managed_object_id(vm) in allowed]
        if spec.names:
            vms = [vm for vm in vms if name_matches(vm.name, spec.names)]
        return vms

    # ── Helpers ──────────────────────────────────────────────────

    def vms_of(self, obj) -> list:
        """VMs related to an inventory object."""
        if isinstance(obj, vim.VirtualMachine):
            return [obj]
        if isinstance(obj, (vim.Datastore, vim.Network, vim.HostSystem, vim.ResourcePool)):
            return list(obj.vm)
        if isinstance(obj, (vim.DistributedVirtualSwitch, StandardSwitch)):
            return self._switch_vms(obj)
        if isinstance(obj, (vim.Folder, vim.Datacenter, vim.ComputeResource)):
            return self.client.list_objects([vim.VirtualMachine], obj, True)
        raise TypeError(f"Cannot relate VMs to object of type {type(obj).__name__}")

    def _vms_in_location(self, location, recursive: bool) -> list:
        if isinstance(location, vim.Datacenter) and not recursive:
            location = location.vmFolder
        if isinstance(location, vim.ComputeResource) and not recursive:
            # direct children of a cluster view are hosts and the root pool
            location = location.resourcePool
        if isinstance(location, vim.ResourcePool) and not recursive:
            return list(location.vm)
        return self.client.list_objects([vim.VirtualMachine], location, recursive)

    @staticmethod
    def _switch_vms(switch) -> list:
        if isinstance(switch, StandardSwitch):
            return [vm for network in switch.networks for vm in network.vm]
        return [vm for portgroup in switch.portgroup for vm in portgroup.vm]

    def _tagged_vm_ids(self, tags) -> set[str]:
        if self.client.tagging is None:
            raise RuntimeError(f"Tag filter requested but tagging is disabled for {self.client.host}")
        ids: set[str] = set()
        for tag in tags:
            ids.update(self.client.tagging.list_attached_vm_ids(tag))
        return ids

    @staticmethod
    def _moids(vms: Iterable) -> set[str]:
        return {managed_object_id(vm) for vm in vms}

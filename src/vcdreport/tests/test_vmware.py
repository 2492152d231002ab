"""Tests for the vCenter-facing layer.

Covers:
  - CD drive backings (ISO, host device, remote device)
  - Primary datastore and folder path resolution
  - VM listing per selection mode
  - Entity and standard switch lookup
  - REST tagging client
"""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from pyVmomi import vim


# ═══════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════

def folder(name, parent=None):
    f = Mock(spec=vim.Folder)
    f.name = name
    f.parent = parent
    return f


def datacenter(name="DC1"):
    dc = Mock(spec=vim.Datacenter)
    dc.name = name
    dc.parent = folder("Datacenters")
    return dc


def vm_with_devices(*devices, name="vm01"):
    return SimpleNamespace(
        name=name,
        config=SimpleNamespace(hardware=SimpleNamespace(device=list(devices)), files=None),
    )


def cdrom(backing, key=3000):
    return vim.vm.device.VirtualCdrom(
        key=key, deviceInfo=vim.Description(label=f"CD/DVD drive {key}", summary=""), backing=backing,
    )


def vm(name, moid):
    return SimpleNamespace(name=name, _moId=moid)


SAMPLE_VMS = [
    vm("web-prod-01", "vm-11"),
    vm("web-prod-02", "vm-12"),
    vm("db-prod-01", "vm-13"),
    vm("Dev-App-01", "vm-14"),
]


def fake_client(vms=SAMPLE_VMS, tagged=None):
    client = Mock()
    client.host = "vc1.local"
    client.list_objects.side_effect = lambda types, container=None, recursive=True: list(vms)
    if tagged is None:
        client.tagging = None
    else:
        client.tagging.list_attached_vm_ids.side_effect = lambda tag: tagged.get(tag, [])
    return client


# ═══════════════════════════════════════════════════════════════════
#  CD Drive Tests
# ═══════════════════════════════════════════════════════════════════

class TestCDDrive:
    def test_iso_backing(self):
        from vcdreport.vmware.devices import get_cd_drive
        backing = vim.vm.device.VirtualCdrom.IsoBackingInfo(fileName="[iso] win2022.iso")
        state = get_cd_drive(vm_with_devices(cdrom(backing)))
        assert state.iso_path == "[iso] win2022.iso"
        assert state.host_device == "" and state.remote_device == ""
        assert state.label == "CD/DVD drive 3000"

    def test_host_device_backing(self):
        from vcdreport.vmware.devices import get_cd_drive
        backing = vim.vm.device.VirtualCdrom.AtapiBackingInfo(deviceName="/vmfs/devices/cdrom/mpx.vmhba0:C0:T0:L0")
        state = get_cd_drive(vm_with_devices(cdrom(backing)))
        assert state.host_device == "/vmfs/devices/cdrom/mpx.vmhba0:C0:T0:L0"
        assert state.iso_path == ""

    def test_remote_device_backing(self):
        from vcdreport.vmware.devices import get_cd_drive
        backing = vim.vm.device.VirtualCdrom.RemotePassthroughBackingInfo(deviceName="", exclusive=False)
        state = get_cd_drive(vm_with_devices(cdrom(backing)))
        assert state.remote_device == ""
        backing = vim.vm.device.VirtualCdrom.RemoteAtapiBackingInfo(deviceName="client-cdrom")
        assert get_cd_drive(vm_with_devices(cdrom(backing))).remote_device == "client-cdrom"

    def test_no_cd_drive(self):
        from vcdreport.vmware.devices import get_cd_drive
        nic = vim.vm.device.VirtualVmxnet3(key=4000)
        assert get_cd_drive(vm_with_devices(nic)) is None

    def test_first_drive_reported(self):
        from vcdreport.vmware.devices import get_cd_drive
        first = cdrom(vim.vm.device.VirtualCdrom.IsoBackingInfo(fileName="[ds] one.iso"), key=3000)
        second = cdrom(vim.vm.device.VirtualCdrom.IsoBackingInfo(fileName="[ds] two.iso"), key=3001)
        assert get_cd_drive(vm_with_devices(first, second)).iso_path == "[ds] one.iso"

    def test_missing_config_raises(self):
        from vcdreport.vmware.devices import get_cd_drive
        with pytest.raises(RuntimeError):
            get_cd_drive(SimpleNamespace(name="orphan", config=None))


# ═══════════════════════════════════════════════════════════════════
#  Datastore / Folder Path Tests
# ═══════════════════════════════════════════════════════════════════

class TestDatastoreName:
    def test_from_vmx_path(self):
        from vcdreport.vmware.devices import get_datastore_name
        vm_obj = SimpleNamespace(
            config=SimpleNamespace(files=SimpleNamespace(vmPathName="[SAN-01 gold] web/web.vmx")),
            datastore=[SimpleNamespace(name="other")],
        )
        assert get_datastore_name(vm_obj) == "SAN-01 gold"

    def test_fallback_to_first_datastore(self):
        from vcdreport.vmware.devices import get_datastore_name
        vm_obj = SimpleNamespace(config=None, datastore=[SimpleNamespace(name="ds-a"), SimpleNamespace(name="ds-b")])
        assert get_datastore_name(vm_obj) == "ds-a"

    def test_no_datastore(self):
        from vcdreport.vmware.devices import get_datastore_name
        assert get_datastore_name(SimpleNamespace(config=None, datastore=[])) == ""


class TestFolderPath:
    def test_nested_folders(self):
        from vcdreport.vmware.devices import compute_folder_path
        dc = datacenter()
        parent = folder("Web", folder("Production", folder("vm", dc)))
        assert compute_folder_path(SimpleNamespace(parent=parent, parentVApp=None)) == "Production/Web"

    def test_vm_in_root_folder(self):
        from vcdreport.vmware.devices import compute_folder_path
        vm_obj = SimpleNamespace(parent=folder("vm", datacenter()), parentVApp=None)
        assert compute_folder_path(vm_obj) == ""

    def test_datacenter_in_folder_is_excluded(self):
        from vcdreport.vmware.devices import compute_folder_path
        dc = Mock(spec=vim.Datacenter)
        dc.name = "DC-East"
        dc.parent = folder("Region", folder("Datacenters"))
        vm_obj = SimpleNamespace(parent=folder("Linux", folder("vm", dc)), parentVApp=None)
        assert compute_folder_path(vm_obj) == "Linux"

    def test_vapp_member(self):
        from vcdreport.vmware.devices import compute_folder_path
        apps = folder("Apps", folder("vm", datacenter()))
        vapp = Mock(spec=vim.VirtualApp)
        vapp.name = "erp-stack"
        vapp.parentFolder = apps
        vapp.parentVApp = None
        assert compute_folder_path(SimpleNamespace(parent=None, parentVApp=vapp)) == "Apps/erp-stack"


# ═══════════════════════════════════════════════════════════════════
#  Inventory Tests
# ═══════════════════════════════════════════════════════════════════

class TestVMInventory:
    def _names(self, vms):
        return [v.name for v in vms]

    def test_all_vms(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        assert self._names(VMInventory(fake_client()).list_vms(FilterSpec())) == [v.name for v in SAMPLE_VMS]

    def test_name_glob_case_insensitive(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        inv = VMInventory(fake_client())
        assert self._names(inv.list_vms(FilterSpec(names=["WEB-*"]))) == ["web-prod-01", "web-prod-02"]
        assert self._names(inv.list_vms(FilterSpec(names=["dev-app-01"]))) == ["Dev-App-01"]

    def test_datastore_filter(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        ds = SimpleNamespace(name="ds1", vm=[SAMPLE_VMS[2], SAMPLE_VMS[0]])
        vms = VMInventory(fake_client()).list_vms(FilterSpec(datastores=[ds]))
        assert self._names(vms) == ["web-prod-01", "db-prod-01"]  # inventory order

    def test_empty_datastore(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        ds = SimpleNamespace(name="ISO_Volume", vm=[])
        assert VMInventory(fake_client()).list_vms(FilterSpec(datastores=[ds])) == []

    def test_selectors_are_anded(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.client import StandardSwitch
        from vcdreport.vmware.inventory import VMInventory

        ds = SimpleNamespace(vm=SAMPLE_VMS[:3])
        switch = StandardSwitch(name="vSwitch0", host="esx1", networks=[SimpleNamespace(vm=SAMPLE_VMS[1:])])
        client = fake_client(tagged={"prod": ["vm-12", "vm-13", "vm-14"]})
        spec = FilterSpec(names=["*prod*"], datastores=[ds], virtual_switches=[switch], tags=["prod"])
        assert self._names(VMInventory(client).list_vms(spec)) == ["web-prod-02", "db-prod-01"]

    def test_distributed_switch(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        dvs = SimpleNamespace(portgroup=[SimpleNamespace(vm=[SAMPLE_VMS[3]]), SimpleNamespace(vm=[])])
        vms = VMInventory(fake_client()).list_vms(FilterSpec(virtual_switches=[dvs]))
        assert self._names(vms) == ["Dev-App-01"]

    def test_tag_filter_requires_tagging(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        with pytest.raises(RuntimeError):
            VMInventory(fake_client()).list_vms(FilterSpec(tags=["prod"]))

    def test_location_no_recursion(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        location = Mock()
        client = fake_client()
        VMInventory(client).list_vms(FilterSpec(locations=[location], no_recursion=True))
        client.list_objects.assert_called_once_with([vim.VirtualMachine], location, False)

    def test_cluster_location_no_recursion_uses_root_pool(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        cluster = Mock(spec=vim.ClusterComputeResource)
        cluster.resourcePool = Mock(spec=vim.ResourcePool)
        cluster.resourcePool.vm = [SAMPLE_VMS[2], SAMPLE_VMS[0]]
        client = fake_client()
        vms = VMInventory(client).list_vms(FilterSpec(locations=[cluster], no_recursion=True))
        assert self._names(vms) == ["db-prod-01", "web-prod-01"]
        client.list_objects.assert_not_called()

    def test_locations_listed_once(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        vms = VMInventory(fake_client()).list_vms(FilterSpec(locations=[Mock(), Mock()]))
        assert self._names(vms) == [v.name for v in SAMPLE_VMS]

    def test_by_id_keeps_order_and_skips_unknown(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        spec = FilterSpec(ids=["VirtualMachine-vm-13", "vm-99", "vm-11"])
        assert self._names(VMInventory(fake_client()).list_vms(spec)) == ["db-prod-01", "web-prod-01"]

    def test_related_objects(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory

        host = Mock(spec=vim.HostSystem)
        host.vm = [SAMPLE_VMS[1], SAMPLE_VMS[0]]
        cluster = Mock(spec=vim.ClusterComputeResource)
        client = fake_client(vms=[SAMPLE_VMS[0], SAMPLE_VMS[3]])

        vms = VMInventory(client).list_vms(FilterSpec(related_objects=[host, cluster]))
        assert self._names(vms) == ["web-prod-02", "web-prod-01", "Dev-App-01"]
        client.list_objects.assert_called_once_with([vim.VirtualMachine], cluster, True)

    def test_unsupported_related_object(self):
        from vcdreport.filters import FilterSpec
        from vcdreport.vmware.inventory import VMInventory
        with pytest.raises(TypeError):
            VMInventory(fake_client()).list_vms(FilterSpec(related_objects=["not-an-entity"]))

    def test_normalize_vm_id(self):
        from vcdreport.vmware.inventory import normalize_vm_id
        assert normalize_vm_id("VirtualMachine-vm-7") == "vm-7"
        assert normalize_vm_id(" vm-7 ") == "vm-7"


# ═══════════════════════════════════════════════════════════════════
#  Client Lookup Tests
# ═══════════════════════════════════════════════════════════════════

class TestClientLookups:
    def _client(self, objects):
        from vcdreport.vmware.client import VSphereClient
        client = VSphereClient()
        client._host = "vc1.local"
        client.list_objects = Mock(return_value=objects)
        return client

    def test_find_entities_glob(self):
        ds = [SimpleNamespace(name="ISO_Volume"), SimpleNamespace(name="SAN-01"), SimpleNamespace(name="SAN-02")]
        found = self._client(ds).find_entities([vim.Datastore], ["san-*"])
        assert [d.name for d in found] == ["SAN-01", "SAN-02"]

    def test_find_entities_missing(self):
        client = self._client([SimpleNamespace(name="SAN-01")])
        with pytest.raises(LookupError, match="Datastore 'nope'"):
            client.find_entities([vim.Datastore], ["nope"])

    def test_find_standard_switches(self):
        pg = SimpleNamespace(key="key-vim.host.PortGroup-VM Network", spec=SimpleNamespace(name="VM Network"))
        vswitch = SimpleNamespace(name="vSwitch0", portgroup=["key-vim.host.PortGroup-VM Network"])
        vm_network = SimpleNamespace(name="VM Network", vm=[])
        other_network = SimpleNamespace(name="Storage", vm=[])
        host = SimpleNamespace(
            name="esx1",
            config=SimpleNamespace(network=SimpleNamespace(portgroup=[pg], vswitch=[vswitch])),
            network=[vm_network, other_network],
        )
        switches = self._client([host]).find_standard_switches(["vswitch0"])
        assert len(switches) == 1
        assert switches[0].host == "esx1"
        assert switches[0].networks == [vm_network]

    def test_find_standard_switches_missing(self):
        with pytest.raises(LookupError):
            self._client([]).find_standard_switches(["vSwitch9"])

    def test_content_requires_connection(self):
        from vcdreport.vmware.client import VSphereClient
        with pytest.raises(ConnectionError):
            VSphereClient().content


# ═══════════════════════════════════════════════════════════════════
#  Tagging Client Tests
# ═══════════════════════════════════════════════════════════════════

class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.ok = status_code < 400
        self.content = b"" if payload is None else b"x"
        self.text = str(payload)

    def json(self):
        return self.payload

    def raise_for_status(self):
        import requests
        raise requests.HTTPError(f"{self.status_code} error")


TAGS = {
    "urn:tag:1": {"id": "urn:tag:1", "name": "prod", "category_id": "urn:cat:env"},
    "urn:tag:2": {"id": "urn:tag:2", "name": "linux", "category_id": "urn:cat:os"},
}


def tagging_client(attached=("urn:tag:1", "urn:tag:2"), login_status=200):
    from vcdreport.vmware.tagging import TaggingClient

    tc = TaggingClient("vc1.local", "reader@vsphere.local", "secret", timeout=5)
    session = Mock()
    session.headers = {}
    session.post.return_value = FakeResponse("token-123", status_code=login_status)

    def request(method, url, **kwargs):
        if url.endswith("/cis/tagging/tag"):
            return FakeResponse(list(TAGS))
        if "/cis/tagging/tag/" in url:
            return FakeResponse(TAGS[url.rsplit("/", 1)[1]])
        if url.endswith("/cis/tagging/tag-association"):
            return FakeResponse(list(attached))
        if "/cis/tagging/tag-association/" in url:
            return FakeResponse([{"type": "VirtualMachine", "id": "vm-11"}, {"type": "HostSystem", "id": "host-9"}])
        return FakeResponse(status_code=404)

    session.request.side_effect = request
    tc.session = session
    return tc


class TestTaggingClient:
    def test_attached_tag_names_in_order(self):
        tc = tagging_client(attached=("urn:tag:2", "urn:tag:1"))
        assert tc.list_attached_tag_names(vm("web", "vm-11")) == ["linux", "prod"]
        assert tc.session.headers["vmware-api-session-id"] == "token-123"

    def test_attached_tags_request_body(self):
        tc = tagging_client()
        tc.list_attached_tags(vm("web", "vm-11"))
        method, url = tc.session.request.call_args_list[0].args
        kwargs = tc.session.request.call_args_list[0].kwargs
        assert (method, url) == ("POST", "https://vc1.local:443/api/cis/tagging/tag-association")
        assert kwargs["params"] == {"action": "list-attached-tags"}
        assert kwargs["json"] == {"object_id": {"type": "VirtualMachine", "id": "vm-11"}}
        assert kwargs["timeout"] == 5

    def test_login_once(self):
        tc = tagging_client()
        tc.list_attached_tag_names(vm("a", "vm-1"))
        tc.list_attached_tag_names(vm("b", "vm-2"))
        assert tc.session.post.call_count == 1

    def test_login_failure_raises(self):
        import requests
        tc = tagging_client(login_status=401)
        with pytest.raises(requests.HTTPError):
            tc.list_attached_tag_names(vm("a", "vm-1"))

    def test_find_tags(self):
        tc = tagging_client()
        assert [t.name for t in tc.find_tags(["PROD"])] == ["prod"]
        with pytest.raises(LookupError):
            tc.find_tags(["missing"])

    def test_attached_vm_ids(self):
        from vcdreport.vmware.tagging import Tag
        tc = tagging_client()
        assert tc.list_attached_vm_ids(Tag(id="urn:tag:1", name="prod")) == ["vm-11"]

    def test_logout_without_session_is_noop(self):
        tc = tagging_client()
        tc.logout()
        tc.session.delete.assert_not_called()

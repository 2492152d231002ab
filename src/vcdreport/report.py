"""CD drive report generation and export."""

from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from vcdreport.filters import FilterSpec
from vcdreport.utils.logging import get_logger
from vcdreport.vmware.client import VSphereClient
from vcdreport.vmware.devices import compute_folder_path, get_cd_drive, get_datastore_name
from vcdreport.vmware.inventory import VMInventory

logger = get_logger(__name__)

# (attribute, column heading)
COLUMNS = [
    ("name", "Name"),
    ("datastore", "Datastore"),
    ("iso_path", "IsoPath"),
    ("host_device", "HostDevice"),
    ("remote_device", "RemoteDevice"),
    ("blue_folder_path", "BlueFolderPath"),
    ("tags", "Tags"),
]


@dataclass
class ReportRecord:
    """One report line per VM."""
    name: str
    datastore: str = ""
    iso_path: str = ""
    host_device: str = ""
    remote_device: str = ""
    blue_folder_path: str = ""
    tags: str = ""              # comma-joined tag names

    def model_dump(self) -> dict:
        """Serialize keyed by column heading."""
        return {heading: getattr(self, attr) for attr, heading in COLUMNS}


@dataclass
class ReportWarning:
    """A lookup that failed for one VM; the record was still produced."""
    vm_name: str
    field: str
    message: str


@dataclass
class ReportResult:
    records: list[ReportRecord] = field(default_factory=list)
    warnings: list[ReportWarning] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)


class ReportGenerator:
    """Builds the CD drive report for the VMs selected by a FilterSpec.

    VMs are listed first on every selected server; a listing failure
    aborts the report. Each VM is then enriched with CD drive, datastore,
    folder path and tag data. Enrichment failures are logged, recorded as
    ReportWarning and leave the affected fields empty.
    """

    def __init__(
        self,
        clients: Iterable[VSphereClient],
        inventory_factory: Callable[[VSphereClient], VMInventory] = VMInventory,
    ):
        self.clients = list(clients)
        self.inventory_factory = inventory_factory

    def generate(self, spec: FilterSpec) -> ReportResult:
        servers = list(spec.servers) or self.clients

        selected = []
        for client in servers:
            vms = self.inventory_factory(client).list_vms(spec)
            selected.extend((client, vm) for vm in vms)

        result = ReportResult()
        for client, vm in selected:
            result.records.append(self._build_record(client, vm, result.warnings))

        logger.info(f"Report complete: {len(result.records)} VM(s), {len(result.warnings)} warning(s)")
        return result

    def _build_record(self, client: VSphereClient, vm, warnings: list[ReportWarning]) -> ReportRecord:
        name = vm.name
        record = ReportRecord(name=name)

        def attempt(field_name: str, fn: Callable, *args):
            try:
                return fn(*args)
            except Exception as e:
                logger.warning(f"{name}: {field_name} lookup failed: {e}")
                warnings.append(ReportWarning(vm_name=name, field=field_name, message=str(e)))
                return None

        cd = attempt("cd_drive", get_cd_drive, vm)
        if cd is not None:
            record.iso_path = cd.iso_path
            record.host_device = cd.host_device
            record.remote_device = cd.remote_device

        record.datastore = attempt("datastore", get_datastore_name, vm) or ""
        record.blue_folder_path = attempt("folder_path", compute_folder_path, vm) or ""

        if client.tagging is not None:
            tag_names = attempt("tags", client.tagging.list_attached_tag_names, vm)
            record.tags = ",".join(tag_names or [])

        logger.debug(f"  {record.name}: ds={record.datastore} iso={record.iso_path!r} "
                     f"folder={record.blue_folder_path!r} tags={record.tags!r}")
        return record


# ── Export ───────────────────────────────────────────────────────

def to_json(records: Iterable[ReportRecord]) -> str:
    return json.dumps([r.model_dump() for r in records], indent=2)


def to_csv(records: Iterable[ReportRecord]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=[heading for _, heading in COLUMNS], lineterminator="\n")
    writer.writeheader()
    for record in records:
        writer.writerow(record.model_dump())
    return buf.getvalue()


EXPORTERS: dict[str, Callable[[Iterable[ReportRecord]], str]] = {
    "json": to_json,
    "csv": to_csv,
}


def export(records: Iterable[ReportRecord], fmt: str) -> Optional[str]:
    """Render records as text; None for formats rendered by the console."""
    exporter = EXPORTERS.get(fmt)
    return exporter(records) if exporter else None

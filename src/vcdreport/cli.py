"""CLI entry point for vcdreport."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from vcdreport.config import AppConfig
from vcdreport.filters import FilterConflictError, FilterSpec, selection_mode
from vcdreport.report import COLUMNS, ReportGenerator, ReportResult, export
from vcdreport.utils.logging import set_log_level

console = Console()
err_console = Console(stderr=True)

RELATED_TYPES = {
    "datastore": "Datastore",
    "network": "Network",
    "host": "HostSystem",
    "cluster": "ClusterComputeResource",
    "resourcepool": "ResourcePool",
    "vapp": "VirtualApp",
    "folder": "Folder",
    "datacenter": "Datacenter",
    "vds": "DistributedVirtualSwitch",
}

LOCATION_TYPES = ("Folder", "Datacenter", "ComputeResource", "HostSystem", "ResourcePool")


def load_config(config_path: Optional[str], **overrides) -> AppConfig:
    """Load configuration from file or environment, CLI values on top."""
    try:
        if config_path:
            data = AppConfig.from_yaml(config_path).model_dump()
            for section in ("vmware", "report"):
                data[section].update({k: v for k, v in overrides.get(section, {}).items() if v is not None})
            return AppConfig(**data)
        return AppConfig.from_env_and_args(**overrides)
    except (ValidationError, OSError) as e:
        err_console.print(f"[red]Error loading config: {e}[/red]")
        err_console.print("Provide a --config file, the connection options, or set VCENTER_* environment variables.")
        sys.exit(1)


def parse_related(values: tuple[str, ...]) -> list[tuple[str, str]]:
    """Split TYPE:NAME related object options."""
    parsed = []
    for value in values:
        kind, sep, name = value.partition(":")
        kind = kind.strip().lower()
        if not sep or not name or kind not in RELATED_TYPES:
            raise click.BadParameter(
                f"'{value}' is not TYPE:NAME with TYPE one of {', '.join(RELATED_TYPES)}",
                param_hint="--related-object",
            )
        parsed.append((kind, name.strip()))
    return parsed


def resolve_switches(client, patterns: tuple[str, ...]) -> list:
    """Distributed switches and host standard switches matching the patterns."""
    from pyVmomi import vim

    from vcdreport.vmware.client import name_matches

    dvswitches = client.list_objects([vim.DistributedVirtualSwitch])
    found = []
    for pattern in patterns:
        matched = [s for s in dvswitches if name_matches(s.name, [pattern])]
        try:
            matched.extend(client.find_standard_switches([pattern]))
        except LookupError:
            if not matched:
                raise
        found.extend(matched)
    return found


def check_servers(servers: tuple[str, ...], vcenter: str) -> None:
    """Reject --server values that do not name the configured vCenter."""
    if servers and not any(s.lower() == vcenter.lower() for s in servers):
        raise click.BadParameter(
            f"{', '.join(servers)} does not match the configured vCenter {vcenter}", param_hint="--server"
        )


def build_filter(client, names, servers, datastores, locations, switches, tags, ids,
                 related, no_recursion) -> FilterSpec:
    """Resolve selector names to inventory handles on a connected client."""
    from pyVmomi import vim

    tag_handles = []
    if tags:
        if client.tagging is None:
            raise click.UsageError("--tag requires tagging to be enabled in the configuration")
        tag_handles = client.tagging.find_tags(tags)

    related_handles = []
    for kind, name in related:
        related_handles.extend(client.find_entities([getattr(vim, RELATED_TYPES[kind])], [name]))

    return FilterSpec(
        names=names,
        servers=[client] if servers else [],
        datastores=client.find_entities([vim.Datastore], datastores) if datastores else [],
        locations=client.find_entities([getattr(vim, t) for t in LOCATION_TYPES], locations) if locations else [],
        virtual_switches=resolve_switches(client, switches) if switches else [],
        tags=tag_handles,
        ids=ids,
        related_objects=related_handles,
        no_recursion=no_recursion,
    )


def render_table(result: ReportResult, title: str) -> Table:
    table = Table(title=title)
    for attr, heading in COLUMNS:
        style = "cyan" if attr == "name" else None
        table.add_column(heading, style=style, no_wrap=(attr == "name"))
    for record in result.records:
        table.add_row(*(escape(getattr(record, attr)) for attr, _ in COLUMNS))
    return table


@click.group()
@click.version_option(version="0.1.0", prog_name="vcdreport")
def main():
    """Report VM CD/DVD drive configuration from VMware vCenter.

    Lists virtual machines with their datastore, mounted ISO, host or
    remote CD device, folder path and tags.
    """
    pass


@main.command()
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--vcenter", help="vCenter hostname or IP")
@click.option("--username", help="vCenter username")
@click.option("--password-file", type=click.Path(exists=True), help="File containing vCenter password")
@click.option("--password", help="vCenter password (prefer --password-file)")
@click.option("--insecure", is_flag=True, default=False, help="Skip SSL verification")
@click.option("--name", "names", multiple=True, help="VM name pattern (glob, case-insensitive)")
@click.option("--server", "servers", multiple=True, help="Only query this vCenter")
@click.option("--datastore", "datastores", multiple=True, help="VMs on this datastore")
@click.option("--location", "locations", multiple=True,
              help="VMs under this folder, datacenter, cluster, host, resource pool or vApp")
@click.option("--virtual-switch", "switches", multiple=True, help="VMs connected to this virtual switch")
@click.option("--tag", "tags", multiple=True, help="VMs carrying this tag")
@click.option("--id", "ids", multiple=True, help="VM managed object id (vm-42)")
@click.option("--related-object", "related", multiple=True, help="TYPE:NAME, e.g. host:esxi-01.local")
@click.option("--no-recursion", is_flag=True, default=False, help="Do not descend below --location")
@click.option("--format", "fmt", type=click.Choice(["table", "json", "csv"]), help="Output format")
@click.option("--output", "-o", type=click.Path(), help="Output file")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def report(config_path, vcenter, username, password_file, password, insecure, names, servers,
           datastores, locations, switches, tags, ids, related, no_recursion, fmt, output, log_level):
    """List VMs with their CD drive configuration."""
    try:
        selection_mode(
            names=names, servers=servers, datastores=datastores, locations=locations,
            virtual_switches=switches, tags=tags, ids=ids, related_objects=related, no_recursion=no_recursion,
        )
    except FilterConflictError as e:
        raise click.UsageError(str(e))
    related_pairs = parse_related(related)

    if password_file:
        password = Path(password_file).read_text().strip()
    elif not password and not config_path and vcenter and not os.environ.get("VCENTER_PASSWORD"):
        password = click.prompt("vCenter password", hide_input=True)

    config = load_config(
        config_path,
        vmware={"vcenter": vcenter, "username": username, "password": password, "insecure": insecure or None},
        report={"format": fmt, "output": output, "log_level": log_level},
    )
    set_log_level(config.report.log_level)
    check_servers(servers, config.vmware.vcenter)

    from vcdreport.vmware.client import VSphereClient

    client = VSphereClient()
    with console.status("[bold green]Connecting to vCenter..."):
        try:
            client.connect(
                config.vmware.vcenter,
                config.vmware.username,
                config.vmware.password.get_secret_value() if config.vmware.password else "",
                port=config.vmware.port,
                insecure=config.vmware.insecure,
                tagging=config.vmware.tagging,
                request_timeout=config.report.request_timeout,
            )
        except ConnectionError as e:
            err_console.print(f"[red]{e}[/red]")
            sys.exit(1)

    try:
        try:
            spec = build_filter(client, names, servers, datastores, locations, switches, tags,
                                ids, related_pairs, no_recursion)
        except LookupError as e:
            raise click.UsageError(str(e))

        with console.status("[bold green]Collecting CD drive report..."):
            result = ReportGenerator([client]).generate(spec)
    finally:
        client.disconnect()

    emit(result, config.report.format, config.report.output, title=f"VM CD Drives: {config.vmware.vcenter}")


def emit(result: ReportResult, fmt: str, output: Optional[Path], title: str) -> None:
    """Write the report and its warnings."""
    text = export(result.records, fmt)
    if text is None:
        if output:
            with open(output, "w") as f:
                Console(file=f, width=240).print(render_table(result, title))
            console.print(f"[green]Report saved to {output}[/green]")
        else:
            if result.records:
                console.print(render_table(result, title))
            console.print(f"\n[dim]Total: {len(result)} VMs[/dim]")
    elif output:
        Path(output).write_text(text)
        console.print(f"[green]Report saved to {output}[/green]")
    else:
        click.echo(text.rstrip("\n"))

    for warning in result.warnings:
        err_console.print(f"[yellow]warning[/yellow] {escape(warning.vm_name)}: {warning.field}: {escape(warning.message)}")


if __name__ == "__main__":
    main()

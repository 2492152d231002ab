"""VMware vCenter client connection and inventory lookups."""

from __future__ import annotations

import atexit
import fnmatch
import ssl
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim

from vcdreport.utils.logging import get_logger
from vcdreport.vmware.tagging import TaggingClient

logger = get_logger(__name__)


@dataclass
class StandardSwitch:
    """A host standard vSwitch and the VM networks of its port groups.

    Standard switches are data objects on each host, not managed entities,
    so the VMs behind them are reached through the matching networks.
    """
    name: str
    host: str
    networks: list = field(default_factory=list)


def name_matches(name: str, patterns: Iterable[str]) -> bool:
    """Case-insensitive glob match of an inventory name against any pattern."""
    lowered = name.lower()
    return any(fnmatch.fnmatchcase(lowered, p.lower()) for p in patterns)


class VSphereClient:
    """Manages connection to a VMware vCenter instance.

    Uses pyvmomi to connect via the vSphere API. Supports:
    - SSL certificate verification bypass (common in enterprise)
    - Automatic retry with exponential backoff
    - Session management with cleanup on exit
    - An optional REST tagging session next to the SOAP session
    """

    def __init__(self):
        self._si: Optional[vim.ServiceInstance] = None
        self._content: Optional[vim.ServiceInstanceContent] = None
        self._host: str = ""
        self.tagging: Optional[TaggingClient] = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def service_instance(self) -> vim.ServiceInstance:
        if self._si is None:
            raise ConnectionError("Not connected to vCenter. Call connect() first.")
        return self._si

    @property
    def content(self) -> vim.ServiceInstanceContent:
        if self._content is None:
            raise ConnectionError("Not connected to vCenter. Call connect() first.")
        return self._content

    def connect(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 443,
        insecure: bool = False,
        max_retries: int = 3,
        tagging: bool = True,
        request_timeout: float = 30.0,
    ) -> vim.ServiceInstance:
        """Connect to vCenter with retry logic.

        Args:
            host: vCenter hostname or IP address
            username: Login username (e.g. administrator@vsphere.local)
            password: Login password
            port: API port (default 443)
            insecure: Skip SSL certificate verification
            max_retries: Number of connection attempts
            tagging: Also prepare a REST session for tag queries
            request_timeout: Timeout in seconds for each REST call

        Returns:
            vSphere ServiceInstance

        Raises:
            ConnectionError: If all connection attempts fail
        """
        self._host = host
        ssl_context = None
        if insecure:
            ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        last_error = None
        for attempt in range(1, max_retries + 1):
            try:
                logger.info(f"Connecting to vCenter {host} (attempt {attempt}/{max_retries})")
                self._si = SmartConnect(
                    host=host,
                    user=username,
                    pwd=password,
                    port=port,
                    sslContext=ssl_context,
                )
                self._content = self._si.RetrieveContent()
                atexit.register(self.disconnect)

                logger.info(f"Connected to vCenter: {host} "
                            f"(API version: {self._content.about.apiVersion}, "
                            f"Build: {self._content.about.build})")
                break

            except Exception as e:
                last_error = e
                if attempt < max_retries:
                    delay = 2 ** attempt
                    logger.warning(f"Connection failed: {e}. Retrying in {delay}s...")
                    time.sleep(delay)
                else:
                    logger.error(f"All {max_retries} connection attempts failed")
        else:
            raise ConnectionError(f"Failed to connect to vCenter {host}: {last_error}")

        if tagging:
            self.tagging = TaggingClient(
                host, username, password, port=port, insecure=insecure, timeout=request_timeout,
            )
        return self._si

    def disconnect(self):
        """Gracefully disconnect from vCenter."""
        if self.tagging:
            self.tagging.logout()
        if self._si:
            try:
                Disconnect(self._si)
                logger.info(f"Disconnected from vCenter: {self._host}")
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
            finally:
                self._si = None
                self._content = None

    def get_container_view(self, obj_type: list, container=None, recursive: bool = True):
        """Create a container view for efficient object retrieval."""
        return self.content.viewManager.CreateContainerView(
            container or self.content.rootFolder, obj_type, recursive
        )

    def list_objects(self, obj_type: list, container=None, recursive: bool = True) -> list:
        """Snapshot the objects of a container view and destroy the view."""
        view = self.get_container_view(obj_type, container, recursive)
        try:
            return list(view.view)
        finally:
            view.Destroy()

    def find_entities(self, obj_type: list, patterns: Iterable[str]) -> list:
        """Find managed entities whose name matches any glob pattern.

        Results follow inventory order, each entity once.

        Raises:
            LookupError: If a pattern matches nothing
        """
        patterns = list(patterns)
        candidates = self.list_objects(obj_type)
        found = []
        for pattern in patterns:
            matched = [c for c in candidates if name_matches(c.name, [pattern])]
            if not matched:
                kinds = "/".join(t.__name__.split(".")[-1] for t in obj_type)
                raise LookupError(f"{kinds} '{pattern}' not found in vCenter {self._host}")
            found.extend(m for m in matched if m not in found)
        return found

    def find_standard_switches(self, patterns: Iterable[str]) -> list[StandardSwitch]:
        """Find host standard vSwitches by name across every host.

        Raises:
            LookupError: If a pattern matches no switch on any host
        """
        patterns = list(patterns)
        switches: list[StandardSwitch] = []
        seen_patterns: set[str] = set()
        for host in self.list_objects([vim.HostSystem]):
            net_config = host.config.network if host.config else None
            if net_config is None:
                continue
            pg_names_by_key = {pg.key: pg.spec.name for pg in net_config.portgroup or []}
            for vswitch in net_config.vswitch or []:
                hits = [p for p in patterns if name_matches(vswitch.name, [p])]
                if not hits:
                    continue
                seen_patterns.update(hits)
                pg_names = {pg_names_by_key.get(k) for k in vswitch.portgroup or []}
                networks = [
                    n for n in host.network
                    if n.name in pg_names and not isinstance(n, vim.dvs.DistributedVirtualPortgroup)
                ]
                switches.append(StandardSwitch(name=vswitch.name, host=host.name, networks=networks))

        missing = [p for p in patterns if p not in seen_patterns]
        if missing:
            raise LookupError(f"Virtual switch '{missing[0]}' not found in vCenter {self._host}")
        return switches

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.disconnect()

"""vSphere tag lookups through the vSphere Automation REST API.

Tags are not part of the SOAP inventory exposed by pyVmomi, so tag
assignments go through the CIS tagging endpoints:

    POST /api/session
    GET  /api/cis/tagging/tag
    GET  /api/cis/tagging/tag/{tag_id}
    POST /api/cis/tagging/tag-association?action=list-attached-tags
    POST /api/cis/tagging/tag-association/{tag_id}?action=list-attached-objects
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import requests
import urllib3

from vcdreport.utils.logging import get_logger

logger = get_logger(__name__)

SESSION_HEADER = "vmware-api-session-id"


@dataclass(frozen=True)
class Tag:
    """A vSphere tag as returned by the tagging API."""
    id: str
    name: str
    category_id: str = ""


def managed_object_id(obj) -> str:
    """Return the bare managed object id ("vm-42") of a pyVmomi object."""
    return str(obj._moId)


class TaggingClient:
    """Session against the vCenter REST API for tag queries.

    The session is opened lazily on the first request, so a vCenter
    without the Automation API only fails the tag lookups themselves.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 443,
        insecure: bool = False,
        timeout: float = 30.0,
    ):
        self.host = host
        self.base_url = f"https://{host}:{port}/api"
        self.timeout = timeout
        self._auth = (username, password)
        self._token: Optional[str] = None
        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        if insecure:
            self.session.verify = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # ── Session ──────────────────────────────────────────────────

    def login(self) -> None:
        """Create an API session and attach its token to the HTTP session."""
        resp = self.session.post(f"{self.base_url}/session", auth=self._auth, timeout=self.timeout)
        if not resp.ok:
            logger.error(f"vCenter API login failed on {self.host}: {resp.status_code} {resp.text[:200]}")
            resp.raise_for_status()
        token = resp.json()
        if isinstance(token, dict):
            token = token.get("value", "")
        self._token = str(token)
        self.session.headers[SESSION_HEADER] = self._token
        logger.debug(f"Opened vCenter API session on {self.host}")

    def logout(self) -> None:
        """Delete the API session. Failures are logged, never raised."""
        if self._token is None:
            return
        try:
            self.session.delete(f"{self.base_url}/session", timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Error closing vCenter API session on {self.host}: {e}")
        finally:
            self._token = None
            self.session.headers.pop(SESSION_HEADER, None)

    def _request(self, method: str, path: str, **kwargs) -> Any:
        if self._token is None:
            self.login()
        resp = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        if not resp.ok:
            logger.error(f"API error {resp.status_code} on {method} {path}: {resp.text[:500]}")
            resp.raise_for_status()
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # ── Tags ─────────────────────────────────────────────────────

    def get_tag(self, tag_id: str) -> Tag:
        data = self._request("GET", f"/cis/tagging/tag/{tag_id}")
        return Tag(id=data.get("id", tag_id), name=data["name"], category_id=data.get("category_id", ""))

    def list_tag_ids(self) -> list[str]:
        return list(self._request("GET", "/cis/tagging/tag") or [])

    def find_tags(self, patterns: Iterable[str]) -> list[Tag]:
        """Resolve tag name patterns (glob, case-insensitive) to tags.

        Raises:
            LookupError: If a pattern matches no tag
        """
        patterns = list(patterns)
        tags = [self.get_tag(tag_id) for tag_id in self.list_tag_ids()]
        found: list[Tag] = []
        for pattern in patterns:
            matched = [t for t in tags if fnmatch.fnmatchcase(t.name.lower(), pattern.lower())]
            if not matched:
                raise LookupError(f"Tag '{pattern}' not found on {self.host}")
            found.extend(t for t in matched if t not in found)
        return found

    def list_attached_tags(self, vm) -> list[Tag]:
        """Tags attached to a VM, in the order the API returns them."""
        body = {"object_id": {"type": "VirtualMachine", "id": managed_object_id(vm)}}
        tag_ids = self._request(
            "POST", "/cis/tagging/tag-association",
            params={"action": "list-attached-tags"}, json=body,
        ) or []
        return [self.get_tag(tag_id) for tag_id in tag_ids]

    def list_attached_tag_names(self, vm) -> list[str]:
        return [tag.name for tag in self.list_attached_tags(vm)]

    def list_attached_vm_ids(self, tag: Tag) -> list[str]:
        """Managed object ids of the VMs carrying a tag."""
        objects = self._request(
            "POST", f"/cis/tagging/tag-association/{tag.id}",
            params={"action": "list-attached-objects"},
        ) or []
        return [o["id"] for o in objects if o.get("type") == "VirtualMachine"]

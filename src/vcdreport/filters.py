"""VM selection criteria for the CD drive report.

A filter selects VMs in exactly one mode:

  default         name / server / datastore / location / virtual switch /
                  tag / no-recursion, all combinable
  by_id           explicit VM ids, optionally limited to some servers
  related_object  VMs related to given inventory objects, nothing else
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SelectionMode(str, Enum):
    DEFAULT = "default"
    BY_ID = "by_id"
    RELATED_OBJECT = "related_object"


class FilterConflictError(ValueError):
    """Raised when selectors from incompatible modes are combined."""


DEFAULT_SELECTORS = ("names", "datastores", "locations", "virtual_switches", "tags", "no_recursion")


def selection_mode(**selectors: Any) -> SelectionMode:
    """Work out the selection mode from the selectors that are set.

    Takes the FilterSpec field names as keywords; a selector counts as set
    when its value is truthy.

    Raises:
        FilterConflictError: If selectors of different modes are combined
    """
    used = {key for key, value in selectors.items() if value}

    if "related_objects" in used:
        others = sorted(used - {"related_objects"})
        if others:
            raise FilterConflictError(
                f"related objects cannot be combined with: {', '.join(others)}"
            )
        return SelectionMode.RELATED_OBJECT

    if "ids" in used:
        others = sorted(used & set(DEFAULT_SELECTORS))
        if others:
            raise FilterConflictError(f"ids cannot be combined with: {', '.join(others)}")
        return SelectionMode.BY_ID

    return SelectionMode.DEFAULT


class FilterSpec(BaseModel):
    """Immutable set of VM selectors.

    Handles are pyVmomi managed objects (or StandardSwitch / Tag values),
    already resolved against the inventory.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    names: tuple[str, ...] = Field(default=(), description="VM name glob patterns")
    servers: tuple[Any, ...] = Field(default=(), description="Connected VSphereClient handles")
    datastores: tuple[Any, ...] = Field(default=())
    virtual_switches: tuple[Any, ...] = Field(default=())
    locations: tuple[Any, ...] = Field(default=(), description="Folders, datacenters, clusters, hosts, pools, vApps")
    related_objects: tuple[Any, ...] = Field(default=())
    tags: tuple[Any, ...] = Field(default=())
    ids: tuple[str, ...] = Field(default=())
    no_recursion: bool = False

    @model_validator(mode="after")
    def check_mode(self) -> "FilterSpec":
        selection_mode(**self._selectors())
        return self

    def _selectors(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in type(self).model_fields}

    @property
    def mode(self) -> SelectionMode:
        return selection_mode(**self._selectors())

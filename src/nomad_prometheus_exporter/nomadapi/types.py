"""Raw API response types for the Nomad HTTP API.

Pydantic models representing the subset of Nomad's JSON payloads the
exporter relies on. Nomad uses PascalCase keys, so each field carries an
alias; models also accept the Python field names for convenience in tests.
Unknown keys are ignored.
"""

from pydantic import BaseModel, ConfigDict, Field


class _NomadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class RawAllocationStub(_NomadModel):
    """Allocation summary as returned by ``GET /v1/allocations``."""

    id: str = Field("", alias="ID")
    name: str = Field("", alias="Name")
    client_status: str = Field("", alias="ClientStatus")
    job_id: str = Field("", alias="JobID")
    task_group: str = Field("", alias="TaskGroup")
    node_id: str = Field("", alias="NodeID")


class RawJob(_NomadModel):
    """Job metadata embedded in an allocation."""

    id: str = Field("", alias="ID")
    name: str = Field("", alias="Name")
    region: str = Field("", alias="Region")


class RawResources(_NomadModel):
    """Legacy resource block of an allocation. Memory is in MB."""

    cpu: int = Field(0, alias="CPU")
    memory_mb: int = Field(0, alias="MemoryMB")


class RawAllocation(_NomadModel):
    """Allocation detail as returned by ``GET /v1/allocation/<id>``.

    ``job`` and ``resources`` are optional because Nomad may send ``null``
    for either; callers must check before using them.
    """

    id: str = Field("", alias="ID")
    name: str = Field("", alias="Name")
    node_id: str = Field("", alias="NodeID")
    task_group: str = Field("", alias="TaskGroup")
    client_status: str = Field("", alias="ClientStatus")
    job: RawJob | None = Field(None, alias="Job")
    resources: RawResources | None = Field(None, alias="Resources")


class RawNode(_NomadModel):
    """Node detail as returned by ``GET /v1/node/<id>``."""

    id: str = Field("", alias="ID")
    name: str = Field("", alias="Name")
    datacenter: str = Field("", alias="Datacenter")
    status: str = Field("", alias="Status")

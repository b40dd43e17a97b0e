"""Raw API response types for the Nomad HTTP API.

Pydantic models representing the structure of data returned by the Nomad
HTTP API with minimal processing. Nomad uses PascalCase keys, so every
field carries an alias; models can also be built with the snake_case names.
"""

from pydantic import BaseModel, ConfigDict, Field


class _NomadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RawJobListEntry(_NomadModel):
    """Job stub as returned by ``GET /v1/jobs``."""

    id: str = Field("", alias="ID")
    name: str = Field("", alias="Name")
    namespace: str = Field("default", alias="Namespace")
    type: str = Field("", alias="Type")

    # "pending", "running" or "dead"
    status: str = Field("", alias="Status")
    stop: bool = Field(False, alias="Stop")


class RawTaskGroupScale(_NomadModel):
    """Per task group counts from ``GET /v1/job/<id>/scale``."""

    desired: int = Field(0, alias="Desired")
    placed: int = Field(0, alias="Placed")
    running: int = Field(0, alias="Running")
    healthy: int = Field(0, alias="Healthy")
    unhealthy: int = Field(0, alias="Unhealthy")


class RawJobScale(_NomadModel):
    """Scale status of a job, keyed by task group name."""

    job_id: str = Field("", alias="JobID")
    namespace: str = Field("default", alias="Namespace")
    job_stopped: bool = Field(False, alias="JobStopped")
    task_groups: dict[str, RawTaskGroupScale] | None = Field(None, alias="TaskGroups")


class RawAllocation(_NomadModel):
    """Allocation stub as returned by ``GET /v1/job/<id>/allocations``."""

    id: str = Field("", alias="ID")
    job_id: str = Field("", alias="JobID")
    namespace: str = Field("default", alias="Namespace")
    task_group: str = Field("", alias="TaskGroup")
    node_name: str = Field("", alias="NodeName")

    # pending, running, complete, failed, lost or unknown
    client_status: str = Field("", alias="ClientStatus")
    desired_status: str = Field("", alias="DesiredStatus")

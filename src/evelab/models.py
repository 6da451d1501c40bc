"""
Pydantic models for a lab: its static configuration, the provider-neutral
resource requests derived from it, and the Status Record a run produces.

LabSpec is frozen. It is built once (usually by ``evelab.config``) and
handed to the orchestrator; nothing downstream mutates it.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Operation(str, Enum):
    """Lifecycle paths a run can take."""

    CREATE = "create"
    RESET = "reset"
    STOP = "stop"
    TEARDOWN = "teardown"


class InstanceStatus(str, Enum):
    """Instance state as reported by the provider.

    Every transitional provider state collapses into PROVISIONING.
    """

    ABSENT = "absent"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    TERMINATED = "terminated"


class Direction(str, Enum):
    """Firewall rule direction."""

    INGRESS = "ingress"
    EGRESS = "egress"


class InstanceOutcome(str, Enum):
    CREATED = "created"
    NOT_MODIFIED = "not-modified"
    STOPPED = "stopped"
    DELETED = "deleted"


class SettingsOutcome(str, Enum):
    CONFIGURED = "configured"
    NOT_MODIFIED = "not-modified"
    GONE_WITH_INSTANCE = "gone-with-instance"


class ResourceOutcome(str, Enum):
    """Outcome for firewall rules and the custom image."""

    CREATED = "created"
    NOT_MODIFIED = "not-modified"
    DELETED = "deleted"
    NOT_FOUND = "not-found"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_NAME_RE = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")

DEFAULT_SCRIPTS = ["install.sh", "eve-initial-setup.sh"]
ENABLE_VMX_LICENSE = (
    "https://www.googleapis.com/compute/v1/projects/vm-options/global/licenses/enable-vmx"
)
DEFAULT_BASE_IMAGE = (
    "projects/ubuntu-os-cloud/global/images/ubuntu-1604-xenial-v20210429"
)


class LabTimings(BaseModel):
    """Poll intervals, retry caps and settle delays, in seconds."""

    model_config = ConfigDict(frozen=True)

    image_poll_interval: float = Field(default=10.0, ge=0)
    instance_poll_interval: float = Field(default=8.0, ge=0)
    address_poll_interval: float = Field(default=5.0, ge=0)
    connect_backoff: float = Field(default=20.0, ge=0)
    connect_attempts: int = Field(default=3, ge=1)
    check_attempts: int = Field(default=3, ge=1)
    check_retry_interval: float = Field(default=5.0, ge=0)
    reboot_settle: float = Field(default=60.0, ge=0)
    poll_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Deadline for image/instance/address polls; None waits forever",
    )


class LabSpec(BaseModel):
    """Static description of one lab."""

    model_config = ConfigDict(frozen=True)

    project: str = Field(description="GCP project identifier")
    instance_name: str = Field(description="Compute instance name, also the lab identity")
    zone: str = Field(default="us-central1-a")
    machine_type: str = Field(default="c2-standard-4")
    min_cpu_platform: str = Field(default="Intel Cascade Lake")
    disk_size_gb: int = Field(default=10, ge=10, le=65536)
    disk_type: str = Field(default="pd-ssd")
    custom_image_name: str = Field(default="eve-ng")
    base_image: str = Field(
        default=DEFAULT_BASE_IMAGE,
        description="Source image the custom image is built from",
    )
    image_licenses: List[str] = Field(default_factory=lambda: [ENABLE_VMX_LICENSE])
    network: str = Field(default="default")
    network_tag: str = Field(default="eve-ng")
    ssh_public_key_file: Path
    ssh_private_key_file: Path
    ssh_username: str
    scripts_dir: Path = Field(default=Path("."))
    scripts: List[str] = Field(default_factory=lambda: list(DEFAULT_SCRIPTS))
    timings: LabTimings = Field(default_factory=LabTimings)

    @field_validator("instance_name", "custom_image_name", "network_tag")
    @classmethod
    def name_must_be_gce_safe(cls, v: str) -> str:
        """GCE names: lowercase, digits, hyphens; firewall names add a prefix."""
        if len(v) > 55 or not _NAME_RE.match(v):
            raise ValueError(
                "must start with a lowercase letter, contain only lowercase "
                f"letters, digits and hyphens, and be at most 55 chars: got '{v}'"
            )
        return v

    @field_validator("scripts")
    @classmethod
    def scripts_must_be_plain_names(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one bootstrap script is required")
        for name in v:
            if "/" in name or not name.strip():
                raise ValueError(f"script must be a bare file name: got '{name}'")
        return v

    @property
    def remote_home(self) -> str:
        """Home directory of the SSH user on the lab instance."""
        return f"/home/{self.ssh_username}"


# ---------------------------------------------------------------------------
# Provider-neutral resource requests
# ---------------------------------------------------------------------------

class FirewallRule(BaseModel):
    """One direction of the lab's firewall."""

    model_config = ConfigDict(frozen=True)

    name: str
    direction: Direction
    network: str
    target_tag: str
    protocol: str = "tcp"
    ports: List[str] = Field(default_factory=lambda: ["0-65535"])
    source_ranges: List[str] = Field(default_factory=list)
    destination_ranges: List[str] = Field(default_factory=list)
    priority: int = 1000


class ImageRequest(BaseModel):
    """Custom boot image to build."""

    name: str
    source_image: str
    licenses: List[str] = Field(default_factory=list)
    disk_size_gb: int = 10


class InstanceRequest(BaseModel):
    """Compute instance to create."""

    name: str
    zone: str
    machine_type: str
    min_cpu_platform: str
    description: str = "eve-ng compute instance created by evelab"
    source_image: str
    disk_name: str
    disk_type: str
    disk_size_gb: int
    network: str
    tags: List[str] = Field(default_factory=list)
    ssh_keys: str = Field(description="Value of the 'ssh-keys' metadata item")
    can_ip_forward: bool = True


# ---------------------------------------------------------------------------
# Status record
# ---------------------------------------------------------------------------

class FirewallStatus(BaseModel):
    """Per-direction firewall outcome."""

    ingress: Optional[ResourceOutcome] = None
    egress: Optional[ResourceOutcome] = None


class StatusRecord(BaseModel):
    """Observable outcome of one run.

    Fields stay None until the stage that owns them has run, so a record
    taken from an aborted run shows exactly how far it got.
    """

    instance: Optional[InstanceOutcome] = None
    settings: Optional[SettingsOutcome] = None
    firewall: FirewallStatus = Field(default_factory=FirewallStatus)
    image: Optional[ResourceOutcome] = None

    def set_firewall(self, direction: Direction, outcome: ResourceOutcome) -> None:
        setattr(self.firewall, direction.value, outcome)

    def to_dict(self) -> dict:
        """JSON-ready dict; the image key is dropped when no image stage ran."""
        data = self.model_dump(mode="json")
        if data["image"] is None:
            del data["image"]
        return data

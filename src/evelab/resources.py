"""
Deterministic resource requests derived from a LabSpec.

Everything here is a pure function of the LabSpec (plus the SSH public key
file contents), so re-deriving a name or request always yields the same
result. Nothing is ever named with a random suffix.
"""

from __future__ import annotations

from typing import List

from .errors import ConfigError
from .models import (
    Direction,
    FirewallRule,
    ImageRequest,
    InstanceRequest,
    LabSpec,
)

OPEN_RANGE = "0.0.0.0/0"


def firewall_rule_name(spec: LabSpec, direction: Direction) -> str:
    """Name of the lab's firewall rule for one direction.

    Args:
        spec: The lab.
        direction: Ingress or egress.

    Returns:
        '<direction>-<instance name>', e.g. 'ingress-lab1'.
    """
    return f"{Direction(direction).value}-{spec.instance_name}"


def firewall_rule_names(spec: LabSpec) -> List[str]:
    """Both firewall rule names, ingress first."""
    return [firewall_rule_name(spec, d) for d in Direction]


def build_firewall_rule(spec: LabSpec, direction: Direction) -> FirewallRule:
    """Build the allow-all TCP rule for one direction.

    Ingress rules open the source range, egress rules the destination
    range; both use 0.0.0.0/0.
    """
    direction = Direction(direction)
    rule = {
        "name": firewall_rule_name(spec, direction),
        "direction": direction,
        "network": spec.network,
        "target_tag": spec.network_tag,
    }
    if direction == Direction.INGRESS:
        rule["source_ranges"] = [OPEN_RANGE]
    else:
        rule["destination_ranges"] = [OPEN_RANGE]
    return FirewallRule(**rule)


def read_ssh_public_key(spec: LabSpec) -> str:
    """Read the public key that goes into the instance's ssh-keys metadata.

    Raises:
        ConfigError: If the key file cannot be read or is empty.
    """
    try:
        key = spec.ssh_public_key_file.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigError(
            f"could not read SSH public key {spec.ssh_public_key_file}: {exc}"
        ) from exc
    if not key:
        raise ConfigError(f"SSH public key {spec.ssh_public_key_file} is empty")
    return key


def build_instance_request(spec: LabSpec) -> InstanceRequest:
    """Build the instance request; the boot disk comes from the custom image.

    Raises:
        ConfigError: If the SSH public key cannot be read.
    """
    public_key = read_ssh_public_key(spec)
    return InstanceRequest(
        name=spec.instance_name,
        zone=spec.zone,
        machine_type=spec.machine_type,
        min_cpu_platform=spec.min_cpu_platform,
        source_image=f"projects/{spec.project}/global/images/{spec.custom_image_name}",
        disk_name=f"my-root-{spec.instance_name}",
        disk_type=spec.disk_type,
        disk_size_gb=spec.disk_size_gb,
        network=spec.network,
        tags=["http-server", "https-server", spec.network_tag],
        ssh_keys=f"{spec.ssh_username}:{public_key}",
    )


def build_image_request(spec: LabSpec) -> ImageRequest:
    """Build the custom image request (nested virtualization enabled)."""
    return ImageRequest(
        name=spec.custom_image_name,
        source_image=spec.base_image,
        licenses=list(spec.image_licenses),
        disk_size_gb=spec.disk_size_gb,
    )
